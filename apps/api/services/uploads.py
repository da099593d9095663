"""Upload admission and session lookups."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.upload_session import UploadSession
from services.datasets import validate_table_name
from services.errors import (
    BackendUnavailable,
    FileTooLarge,
    SchemaMismatch,
    SessionNotFound,
    StorageQuotaExceeded,
    TableLimitExceeded,
)
from services.file_reader import check_extension
from services.identifiers import normalize_name, sanitize_identifier
from services.quota import TABLE_LIMIT_EXCEEDED, recalculate, reserve_space
from services.tenant_schema import BYTES_PER_MB, table_exists
from services.upload_queue import enqueue_upload_job

logger = logging.getLogger(__name__)

OPERATION_TYPES = ("insert", "upsert")


@dataclass
class UploadRequest:
    tenant_id: str
    filename: str
    table_name: str
    operation_type: str = "insert"
    conflict_columns: List[str] = field(default_factory=list)
    sheet: Optional[str] = None


def derive_table_name(filename: str) -> str:
    return normalize_name(Path(filename or "").stem, "uploaded_table")


def prepare_upload_request(
    tenant_id: str,
    filename: str,
    table_name: Optional[str] = None,
    operation_type: str = "insert",
    conflict_columns: Optional[List[str]] = None,
    sheet: Optional[str] = None,
) -> UploadRequest:
    """Validate everything that can be checked before the file is stored."""
    check_extension(filename)
    explicit = (table_name or "").strip()
    target = validate_table_name(explicit if explicit else derive_table_name(filename))

    if operation_type not in OPERATION_TYPES:
        raise SchemaMismatch(
            f"Unsupported operation '{operation_type}'. Use insert or upsert.",
            details={"operation_type": operation_type},
        )
    keys = [sanitize_identifier(column.strip()) for column in (conflict_columns or []) if column and column.strip()]
    if operation_type == "upsert" and not keys:
        raise SchemaMismatch(
            "Upsert requires at least one conflict column.",
            details={"operation_type": operation_type},
        )
    return UploadRequest(
        tenant_id=tenant_id,
        filename=filename,
        table_name=target,
        operation_type=operation_type,
        conflict_columns=keys if operation_type == "upsert" else [],
        sheet=(sheet or "").strip() or None,
    )


def check_file_size(size_bytes: int) -> None:
    limit_bytes = int(settings.MAX_FILE_SIZE_MB) * BYTES_PER_MB
    if size_bytes > limit_bytes:
        raise FileTooLarge(
            f"File too large. Max upload size is {settings.MAX_FILE_SIZE_MB}MB.",
            details={"size_bytes": size_bytes, "limit_mb": settings.MAX_FILE_SIZE_MB},
        )


def _discard(file_path: Path) -> None:
    try:
        file_path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove rejected upload %s: %s", file_path, exc)


async def submit_upload(
    db: AsyncSession,
    request: UploadRequest,
    file_path: Path,
    file_size_bytes: int,
) -> UploadSession:
    """Admit a stored upload against quota, record its session and enqueue it.

    Returns immediately; parsing and loading happen on the worker.
    """
    try:
        check_file_size(file_size_bytes)
        creates_table = not await table_exists(request.tenant_id, request.table_name)
        estimated_mb = (file_size_bytes / BYTES_PER_MB) * float(settings.UPLOAD_SIZE_ESTIMATE_FACTOR)
        decision = await reserve_space(request.tenant_id, estimated_mb, db, creates_table=creates_table)
    except Exception:
        _discard(file_path)
        raise
    if not decision:
        _discard(file_path)
        error_cls = TableLimitExceeded if decision.reason == TABLE_LIMIT_EXCEEDED else StorageQuotaExceeded
        raise error_cls(decision.message, details=decision.details())

    session = UploadSession(
        session_id=uuid.uuid4().hex,
        tenant_id=request.tenant_id,
        filename=request.filename,
        file_path=str(file_path),
        file_size_bytes=int(file_size_bytes),
        table_name=request.table_name,
        operation_type=request.operation_type,
        conflict_columns=request.conflict_columns or None,
        sheet=request.sheet,
        status="uploading",
        progress_pct=0,
        rows_committed=0,
        attempts=0,
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)

    try:
        queue_job = enqueue_upload_job(session.session_id)
        session.queue_job_id = queue_job.id
        await db.commit()
        await db.refresh(session)
    except Exception as exc:
        session.status = "failed"
        session.error_code = "queue_unavailable"
        session.error_message = str(exc)[:1000]
        await db.commit()
        _discard(file_path)
        try:
            await recalculate(request.tenant_id)
        except Exception as recalc_exc:
            logger.warning("Quota release failed for tenant %s: %s", request.tenant_id, recalc_exc)
        raise BackendUnavailable(
            "Upload queue unavailable. Check Redis/worker availability and retry.",
            details={"session_id": session.session_id},
        ) from exc

    logger.info(
        "Accepted upload %s for tenant %s into table %s (%s bytes)",
        session.session_id,
        request.tenant_id,
        request.table_name,
        file_size_bytes,
    )
    return session


def serialize_session(session: UploadSession) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "filename": session.filename,
        "table_name": session.table_name,
        "operation_type": session.operation_type,
        "status": session.status,
        "progress_pct": int(session.progress_pct or 0),
        "rows_committed": int(session.rows_committed or 0),
        "rows_affected": session.rows_affected,
        "attempts": int(session.attempts or 0),
        "file_size_bytes": int(session.file_size_bytes or 0),
        "error_code": session.error_code,
        "error_message": session.error_message,
        "created_at": session.created_at.isoformat() if session.created_at else None,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }


async def get_session_status(db: AsyncSession, tenant_id: str, session_id: str) -> UploadSession:
    result = await db.execute(
        select(UploadSession).where(
            UploadSession.session_id == session_id,
            UploadSession.tenant_id == tenant_id,
        )
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFound("Upload session not found.", details={"session_id": session_id})
    return session


async def list_sessions(db: AsyncSession, tenant_id: str, limit: int = 20) -> List[UploadSession]:
    result = await db.execute(
        select(UploadSession)
        .where(UploadSession.tenant_id == tenant_id)
        .order_by(UploadSession.created_at.desc())
        .limit(max(1, min(int(limit), 100)))
    )
    return list(result.scalars().all())


async def session_stats(db: AsyncSession, tenant_id: str) -> Dict[str, int]:
    result = await db.execute(
        select(UploadSession.status, func.count(UploadSession.session_id))
        .where(UploadSession.tenant_id == tenant_id)
        .group_by(UploadSession.status)
    )
    counts = {status: int(count) for status, count in result.all()}
    return {
        "total": sum(counts.values()),
        "uploading": counts.get("uploading", 0),
        "processing": counts.get("processing", 0),
        "completed": counts.get("completed", 0),
        "failed": counts.get("failed", 0),
    }
