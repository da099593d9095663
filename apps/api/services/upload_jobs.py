"""Background upload pipeline: parse, infer, create, load, reconcile."""

from __future__ import annotations

import asyncio
from contextlib import closing
from datetime import datetime, timezone
from itertools import chain, islice
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from rq import get_current_job
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.upload_session import UploadSession
from services import etl, quota
from services.datasets import refresh_table_stats
from services.errors import DuplicateTable, FileParseError, SchemaMismatch, TableLimitExceeded, translate_db_error
from services.file_reader import open_reader
from services.tenant_schema import describe_table, ensure_namespace, has_table
from services.type_inference import ColumnSchema, coerce_row, infer_columns
from services.upload_queue import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

PROGRESS_NAMESPACE_READY = 10
PROGRESS_SCHEMA_INFERRED = 20
PROGRESS_TABLE_READY = 60
PROGRESS_ROWS_WRITTEN = 70
PROGRESS_QUOTA_RECALCULATED = 90
PROGRESS_COMPLETE = 100


async def _get_session(session_id: str) -> Optional[UploadSession]:
    async with async_session_maker() as db:
        result = await db.execute(select(UploadSession).where(UploadSession.session_id == session_id))
        return result.scalar_one_or_none()


async def _update_session(
    session_id: str,
    *,
    status: Optional[str] = None,
    progress: Optional[int] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    rows_affected: Optional[int] = None,
    increment_attempts: bool = False,
    completed: bool = False,
) -> bool:
    """Apply a session update; terminal sessions and progress never move backwards."""
    async with async_session_maker() as db:
        result = await db.execute(select(UploadSession).where(UploadSession.session_id == session_id))
        session = result.scalar_one_or_none()
        if not session or session.status in TERMINAL_STATUSES:
            return False
        if status is not None:
            session.status = status
        if progress is not None:
            session.progress_pct = max(int(session.progress_pct or 0), max(0, min(int(progress), 100)))
        if error_code is not None:
            session.error_code = error_code or None
        if error_message is not None:
            session.error_message = error_message[:1000] or None
        if rows_affected is not None:
            session.rows_affected = int(rows_affected)
        if increment_attempts:
            session.attempts = max(int(session.attempts or 0), 0) + 1
        if completed:
            session.completed_at = datetime.now(timezone.utc)
        await db.commit()
        return True


def _remove_file(file_path: Optional[Path]) -> None:
    if not file_path:
        return
    try:
        file_path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not cleanup upload file %s: %s", file_path, exc)


def _coerced_rows(
    rows: Iterable[Mapping[str, Any]],
    columns: Sequence[ColumnSchema],
    skip: int,
) -> Iterator[Dict[str, Any]]:
    # Row numbers count data rows from 1 so errors point at the file position.
    for row_number, row in enumerate(rows, start=1):
        if row_number <= skip:
            continue
        yield coerce_row(row, columns, row_number=row_number)


async def _existing_columns(namespace: str, table_name: str) -> Optional[List[ColumnSchema]]:
    async with async_session_maker() as db:
        if not await has_table(db, namespace, table_name):
            return None
        return await describe_table(db, namespace, table_name)


def _match_existing(
    table_name: str,
    incoming: Sequence[ColumnSchema],
    existing: Sequence[ColumnSchema],
) -> List[ColumnSchema]:
    by_name = {column.name: column for column in existing}
    unknown = [column.name for column in incoming if column.name not in by_name]
    if unknown:
        raise SchemaMismatch(
            f"Columns not found in table '{table_name}': {', '.join(unknown)}",
            details={"table": table_name, "unknown_columns": unknown},
        )
    return [by_name[column.name] for column in incoming]


async def _prepare_table(
    session: UploadSession,
    namespace: str,
    inferred: List[ColumnSchema],
) -> Tuple[List[ColumnSchema], bool]:
    """Reuse the target table if present, otherwise claim a slot and create it."""
    existing = await _existing_columns(namespace, session.table_name)
    if existing is not None:
        return _match_existing(session.table_name, inferred, existing), False

    async with async_session_maker() as db:
        decision = await quota.claim_table_slot(session.tenant_id, db)
    if not decision:
        raise TableLimitExceeded(decision.message, details=decision.details())

    unique_columns = session.conflict_columns if session.operation_type == "upsert" else None
    try:
        await etl.create_table(session.tenant_id, namespace, session.table_name, inferred, unique_columns)
    except DuplicateTable:
        # Created concurrently by another job for the same table.
        async with async_session_maker() as db:
            await quota.decrement_table_count(session.tenant_id, db)
        existing = await _existing_columns(namespace, session.table_name)
        if existing is None:
            raise
        return _match_existing(session.table_name, inferred, existing), False
    except Exception:
        async with async_session_maker() as db:
            await quota.decrement_table_count(session.tenant_id, db)
        raise

    await refresh_table_stats(session.tenant_id, namespace, session.table_name)
    await quota.recalculate(session.tenant_id, namespace)
    return list(inferred), True


async def _reconcile_quota(tenant_id: str) -> None:
    try:
        await quota.recalculate(tenant_id)
    except Exception as exc:
        logger.warning("Quota reconciliation failed for tenant %s: %s", tenant_id, exc)


async def _run_pipeline(session: UploadSession, file_path: Path) -> int:
    session_id = session.session_id
    tenant_id = session.tenant_id

    namespace = await ensure_namespace(tenant_id)
    await _update_session(session_id, progress=PROGRESS_NAMESPACE_READY)

    reader = await asyncio.to_thread(open_reader, file_path, session.sheet, session.filename)
    skip = int(session.rows_committed or 0)

    async def checkpoint(db: AsyncSession, committed: int) -> None:
        await db.execute(
            update(UploadSession)
            .where(UploadSession.session_id == session_id)
            .values(rows_committed=skip + committed)
        )

    with closing(reader.iter_rows()) as rows:
        sample = list(islice(rows, settings.TYPE_SAMPLE_SIZE))
        inferred = infer_columns(reader.columns, sample)
        await _update_session(session_id, progress=PROGRESS_SCHEMA_INFERRED)

        columns, created = await _prepare_table(session, namespace, inferred)
        await _update_session(session_id, progress=PROGRESS_TABLE_READY)

        if skip:
            logger.info("Upload %s resuming after %s committed rows", session_id, skip)

        data_rows = _coerced_rows(chain(sample, rows), columns, skip)
        if session.operation_type == "upsert":
            written = await etl.upsert_rows(
                tenant_id,
                namespace,
                session.table_name,
                columns,
                data_rows,
                session.conflict_columns or [],
                on_batch=checkpoint,
            )
        else:
            written = await etl.insert_rows(
                tenant_id,
                namespace,
                session.table_name,
                columns,
                data_rows,
                on_batch=checkpoint,
            )
    await _update_session(session_id, progress=PROGRESS_ROWS_WRITTEN)

    await refresh_table_stats(tenant_id, namespace, session.table_name)
    await quota.recalculate(tenant_id, namespace)
    await _update_session(session_id, progress=PROGRESS_QUOTA_RECALCULATED)

    logger.info(
        "Upload %s loaded %s rows into %s.%s (table %s)",
        session_id,
        skip + written,
        namespace,
        session.table_name,
        "created" if created else "reused",
    )
    return skip + written


async def process_upload_job_async(session_id: str, final_attempt: bool = True) -> None:
    """Async upload pipeline executed by RQ worker wrapper.

    Retryable failures with attempts left keep the session processing and the
    file on disk, then re-raise so RQ schedules the retry. Anything else ends
    the session as failed and removes the file.
    """
    session = await _get_session(session_id)
    if not session:
        logger.warning("Upload session %s not found", session_id)
        return
    if session.status in TERMINAL_STATUSES:
        logger.info("Upload session %s already %s; skipping", session_id, session.status)
        return

    file_path = Path(session.file_path) if session.file_path else None
    try:
        await _update_session(session_id, status="processing", error_code="", error_message="", increment_attempts=True)
        if file_path is None or not file_path.exists():
            raise FileParseError(
                "The uploaded file is no longer available. Please upload it again.",
                details={"filename": session.filename},
            )
        total_rows = await _run_pipeline(session, file_path)
    except Exception as exc:
        error = translate_db_error(exc)
        if error.retryable and not final_attempt:
            logger.warning("Upload %s failed with retryable error, will retry: %s", session_id, error.message)
            await _update_session(session_id, error_code=error.code, error_message=error.message)
            raise
        logger.exception("Upload %s failed: %s", session_id, error.message)
        await _update_session(
            session_id,
            status="failed",
            error_code=error.code,
            error_message=error.message,
            completed=True,
        )
        _remove_file(file_path)
        await _reconcile_quota(session.tenant_id)
        return

    await _update_session(
        session_id,
        status="completed",
        progress=PROGRESS_COMPLETE,
        error_code="",
        error_message="",
        rows_affected=total_rows,
        completed=True,
    )
    _remove_file(file_path)
    logger.info("Upload job %s completed", session_id)


def process_upload_job(session_id: str) -> None:
    """RQ worker entrypoint for upload jobs."""
    job = get_current_job()
    retries_left = int(getattr(job, "retries_left", 0) or 0) if job is not None else 0
    asyncio.run(process_upload_job_async(session_id, final_attempt=retries_left <= 0))
