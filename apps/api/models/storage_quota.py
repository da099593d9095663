"""Per-tenant storage quota record."""

from sqlalchemy import Column, DateTime, Float, Integer, String
from sqlalchemy.sql import func

from database import Base


class StorageQuota(Base):
    """Table count and size usage against plan-level ceilings."""

    __tablename__ = "storage_quota"

    tenant_id = Column(String, primary_key=True)
    total_tables = Column(Integer, nullable=False, default=0)
    total_size_mb = Column(Float, nullable=False, default=0.0)
    table_limit = Column(Integer, nullable=False)
    limit_mb = Column(Integer, nullable=False)
    last_calculated_at = Column(DateTime(timezone=True), server_default=func.now())
