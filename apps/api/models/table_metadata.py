"""Cached metadata for physical tables inside tenant namespaces."""

from sqlalchemy import BigInteger, Column, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class TableMetadata(Base):
    """One record per physical table; row count and size are cached values."""

    __tablename__ = "user_tables"
    __table_args__ = (UniqueConstraint("tenant_id", "table_name", name="uq_user_tables_tenant_table"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    namespace = Column(String, nullable=False)
    table_name = Column(String, nullable=False)
    row_count = Column(BigInteger, nullable=False, default=0)
    size_mb = Column(Float, nullable=False, default=0.0)
    last_updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
