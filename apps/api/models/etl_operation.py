"""Append-only audit log of ETL actions."""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class EtlOperation(Base):
    """Immutable audit entry for one ETL action."""

    __tablename__ = "etl_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    operation_type = Column(String, nullable=False)  # create, insert, upsert, delete, drop, truncate
    table_name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # success, failed
    rows_affected = Column(BigInteger, nullable=False, default=0)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
