"""Upload session model tracking one ingest job."""

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class UploadSession(Base):
    """Upload accepted for background processing."""

    __tablename__ = "upload_sessions"

    session_id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    filename = Column(String, nullable=False)
    file_path = Column(String, nullable=True)
    file_size_bytes = Column(BigInteger, nullable=False, default=0)
    table_name = Column(String, nullable=False)
    operation_type = Column(String, nullable=False, default="insert")  # insert, upsert
    conflict_columns = Column(JSON, nullable=True)
    sheet = Column(String, nullable=True)
    status = Column(String, nullable=False, default="uploading", index=True)  # uploading, processing, completed, failed
    progress_pct = Column(Integer, nullable=False, default=0)
    rows_committed = Column(BigInteger, nullable=False, default=0)
    rows_affected = Column(BigInteger, nullable=True)
    queue_job_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
