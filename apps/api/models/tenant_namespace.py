"""Tenant -> namespace mapping model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from database import Base


class TenantNamespace(Base):
    """Isolated storage namespace provisioned for one tenant."""

    __tablename__ = "tenant_namespaces"

    tenant_id = Column(String, primary_key=True)
    namespace = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
