"""Age-based cleanup of sessions, audit entries and stale upload files."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy import delete

from config import settings
from database import async_session_maker
from models.etl_operation import EtlOperation
from models.upload_session import UploadSession
from services.upload_queue import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


async def purge_expired_sessions(now: Optional[datetime] = None) -> int:
    """Delete terminal upload sessions older than the retention window."""
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(hours=max(int(settings.SESSION_RETENTION_HOURS), 1))
    async with async_session_maker() as db:
        result = await db.execute(
            delete(UploadSession).where(
                UploadSession.status.in_(TERMINAL_STATUSES),
                UploadSession.created_at < cutoff,
            )
        )
        await db.commit()
        return int(result.rowcount or 0)


async def purge_old_operations(now: Optional[datetime] = None) -> int:
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(days=max(int(settings.ETL_OPERATION_RETENTION_DAYS), 1))
    async with async_session_maker() as db:
        result = await db.execute(delete(EtlOperation).where(EtlOperation.created_at < cutoff))
        await db.commit()
        return int(result.rowcount or 0)


def cleanup_stale_upload_files(now: Optional[datetime] = None) -> int:
    """Best-effort cleanup of old uploaded files to limit disk growth."""
    retention_hours = max(int(settings.TEMP_FILE_RETENTION_HOURS), 1)
    root = Path(settings.UPLOAD_DIR)
    if not root.exists():
        return 0

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=retention_hours)
    removed = 0
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        try:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            if mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        except OSError as exc:
            logger.warning("Could not cleanup stale upload file %s: %s", path, exc)
    return removed


async def run_retention_sweep() -> Dict[str, int]:
    summary = {
        "sessions": await purge_expired_sessions(),
        "operations": await purge_old_operations(),
        "files": cleanup_stale_upload_files(),
    }
    if any(summary.values()):
        logger.info(
            "Retention sweep removed %s sessions, %s operations, %s files",
            summary["sessions"],
            summary["operations"],
            summary["files"],
        )
    return summary
