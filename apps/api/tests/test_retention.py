from datetime import datetime, timedelta, timezone
import os

import pytest
from sqlalchemy.future import select

from config import settings
from models.etl_operation import EtlOperation
from models.upload_session import UploadSession
from services.retention import (
    cleanup_stale_upload_files,
    purge_expired_sessions,
    purge_old_operations,
    run_retention_sweep,
)


def _session(session_id, status, created_at):
    return UploadSession(
        session_id=session_id,
        tenant_id="tenant-r",
        filename="a.csv",
        file_size_bytes=1,
        table_name="a",
        operation_type="insert",
        status=status,
        created_at=created_at,
    )


@pytest.mark.asyncio
async def test_expired_terminal_sessions_are_purged(tenant_db):
    now = datetime.now(timezone.utc)
    old = now - timedelta(hours=settings.SESSION_RETENTION_HOURS + 2)
    async with tenant_db() as db:
        db.add_all(
            [
                _session("old-completed", "completed", old),
                _session("old-failed", "failed", old),
                _session("old-processing", "processing", old),
                _session("new-completed", "completed", now),
            ]
        )
        await db.commit()

    assert await purge_expired_sessions() == 2

    async with tenant_db() as db:
        remaining = (await db.execute(select(UploadSession.session_id).order_by(UploadSession.session_id))).scalars().all()
    assert remaining == ["new-completed", "old-processing"]


@pytest.mark.asyncio
async def test_old_operations_are_purged(tenant_db):
    now = datetime.now(timezone.utc)
    async with tenant_db() as db:
        db.add_all(
            [
                EtlOperation(
                    tenant_id="tenant-r",
                    operation_type="insert",
                    table_name="a",
                    status="success",
                    rows_affected=1,
                    created_at=now - timedelta(days=settings.ETL_OPERATION_RETENTION_DAYS + 1),
                ),
                EtlOperation(
                    tenant_id="tenant-r",
                    operation_type="insert",
                    table_name="a",
                    status="success",
                    rows_affected=2,
                    created_at=now,
                ),
            ]
        )
        await db.commit()

    assert await purge_old_operations() == 1

    async with tenant_db() as db:
        remaining = (await db.execute(select(EtlOperation.rows_affected))).scalars().all()
    assert remaining == [2]


@pytest.mark.asyncio
async def test_stale_upload_files_are_removed(tenant_db):
    upload_root = settings.UPLOAD_DIR
    os.makedirs(os.path.join(upload_root, "user_abc"), exist_ok=True)
    stale_path = os.path.join(upload_root, "user_abc", "stale.csv")
    fresh_path = os.path.join(upload_root, "user_abc", "fresh.csv")
    for path in (stale_path, fresh_path):
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("id\n1\n")
    stale_time = (datetime.now(timezone.utc) - timedelta(hours=settings.TEMP_FILE_RETENTION_HOURS + 1)).timestamp()
    os.utime(stale_path, (stale_time, stale_time))

    assert cleanup_stale_upload_files() == 1
    assert not os.path.exists(stale_path)
    assert os.path.exists(fresh_path)

    summary = await run_retention_sweep()
    assert summary == {"sessions": 0, "operations": 0, "files": 0}
