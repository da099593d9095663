from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import text
from sqlalchemy.future import select

from config import settings
from database import scope_namespace
from models.etl_operation import EtlOperation
from models.upload_session import UploadSession
from services import upload_jobs
from services.errors import BackendUnavailable
from services.quota import get_quota
from services.tenant_schema import derive_namespace, list_tables
from services.upload_jobs import process_upload_job, process_upload_job_async

TENANT = "tenant-jobs"

CSV_CONTENT = (
    "ID,Customer Name,Joined,Balance,Active\n"
    "1,Ada,2024-01-15,10.50,yes\n"
    "2,Grace,2024-02-01,,no\n"
    "3,Linus,2024-03-10,7,yes\n"
    "4,Guido,2024-04-22,0.25,no\n"
    "5,Barbara,2024-05-30,3,yes\n"
)


async def _create_session(session_maker, tmp_path, *, content=CSV_CONTENT, filename="customers.csv", **overrides):
    file_path = tmp_path / filename
    file_path.write_text(content, encoding="utf-8")
    values = {
        "session_id": "session-1",
        "tenant_id": TENANT,
        "filename": filename,
        "file_path": str(file_path),
        "file_size_bytes": file_path.stat().st_size,
        "table_name": "customers",
        "operation_type": "insert",
        "status": "uploading",
        "progress_pct": 0,
        "rows_committed": 0,
        "attempts": 0,
    }
    values.update(overrides)
    async with session_maker() as db:
        db.add(UploadSession(**values))
        await db.commit()
    return file_path


async def _load_session(session_maker, session_id="session-1"):
    async with session_maker() as db:
        result = await db.execute(select(UploadSession).where(UploadSession.session_id == session_id))
        return result.scalar_one()


async def _table_rows(session_maker, table_name="customers"):
    namespace = derive_namespace(TENANT)
    async with session_maker() as db:
        await scope_namespace(db, namespace)
        result = await db.execute(text(f'SELECT * FROM "{namespace}"."{table_name}" ORDER BY id'))
        return [dict(row._mapping) for row in result.all()]


@pytest.mark.asyncio
async def test_upload_job_loads_file_and_completes(tenant_db, tmp_path):
    file_path = await _create_session(tenant_db, tmp_path)

    await process_upload_job_async("session-1")

    session = await _load_session(tenant_db)
    assert session.status == "completed"
    assert session.progress_pct == 100
    assert session.rows_affected == 5
    assert session.rows_committed == 5
    assert session.attempts == 1
    assert session.error_code is None
    assert session.completed_at is not None
    assert not file_path.exists()

    assert await list_tables(TENANT) == ["customers"]
    rows = await _table_rows(tenant_db)
    assert [row["customer_name"] for row in rows] == ["Ada", "Grace", "Linus", "Guido", "Barbara"]
    assert rows[1]["balance"] is None
    assert rows[0]["active"] in (1, True)

    async with tenant_db() as db:
        summary = await get_quota(TENANT, db)
        operations = (await db.execute(select(EtlOperation.operation_type).order_by(EtlOperation.id))).scalars().all()
    assert summary["total_tables"] == 1
    assert operations == ["create", "insert"]


@pytest.mark.asyncio
async def test_upload_job_progress_never_moves_backwards(tenant_db, tmp_path):
    await _create_session(tenant_db, tmp_path)
    real_update = upload_jobs._update_session
    recorded = []

    async def spy(session_id, **kwargs):
        changed = await real_update(session_id, **kwargs)
        recorded.append((await _load_session(tenant_db)).progress_pct)
        return changed

    with patch("services.upload_jobs._update_session", side_effect=spy):
        await process_upload_job_async("session-1")

    assert recorded == sorted(recorded)
    assert recorded[-1] == 100
    assert {10, 20, 60, 70, 90}.issubset(set(recorded))


@pytest.mark.asyncio
async def test_upload_job_parse_error_fails_session_and_removes_file(tenant_db, tmp_path):
    content = "id,qty\n1,5\n2,7\n3,seven\n4,9\n"
    file_path = await _create_session(tenant_db, tmp_path, content=content, filename="stock.csv", table_name="stock")

    with patch.object(settings, "TYPE_SAMPLE_SIZE", 2), patch.object(settings, "ETL_BATCH_SIZE", 2):
        await process_upload_job_async("session-1")

    session = await _load_session(tenant_db)
    assert session.status == "failed"
    assert session.error_code == "PARSE_ERROR"
    assert "row 3" in session.error_message
    assert session.rows_committed == 2
    assert not file_path.exists()
    assert len(await _table_rows(tenant_db, "stock")) == 2


@pytest.mark.asyncio
async def test_upload_job_missing_file_fails_session(tenant_db, tmp_path):
    file_path = await _create_session(tenant_db, tmp_path)
    file_path.unlink()

    await process_upload_job_async("session-1")

    session = await _load_session(tenant_db)
    assert session.status == "failed"
    assert session.error_code == "PARSE_ERROR"
    assert await list_tables(TENANT) == []


@pytest.mark.asyncio
async def test_retryable_failure_resumes_without_duplicates(tenant_db, tmp_path):
    file_path = await _create_session(tenant_db, tmp_path)
    real_coerce_row = upload_jobs.coerce_row

    def flaky(row, columns, row_number=None):
        if row_number == 3:
            raise BackendUnavailable("connection reset by peer")
        return real_coerce_row(row, columns, row_number=row_number)

    with patch.object(settings, "ETL_BATCH_SIZE", 2):
        with patch("services.upload_jobs.coerce_row", side_effect=flaky):
            with pytest.raises(BackendUnavailable):
                await process_upload_job_async("session-1", final_attempt=False)

        interrupted = await _load_session(tenant_db)
        assert interrupted.status == "processing"
        assert interrupted.rows_committed == 2
        assert interrupted.error_code == "BACKEND_ERROR"
        assert file_path.exists()

        await process_upload_job_async("session-1", final_attempt=True)

    session = await _load_session(tenant_db)
    assert session.status == "completed"
    assert session.attempts == 2
    assert session.rows_affected == 5
    assert session.error_code is None
    assert [row["id"] for row in await _table_rows(tenant_db)] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_retryable_failure_on_final_attempt_is_terminal(tenant_db, tmp_path):
    file_path = await _create_session(tenant_db, tmp_path)

    with patch("services.upload_jobs.ensure_namespace", side_effect=BackendUnavailable("database is restarting")):
        await process_upload_job_async("session-1", final_attempt=True)

    session = await _load_session(tenant_db)
    assert session.status == "failed"
    assert session.error_code == "BACKEND_ERROR"
    assert not file_path.exists()


@pytest.mark.asyncio
async def test_non_transient_failure_is_not_retried(tenant_db, tmp_path):
    file_path = await _create_session(tenant_db, tmp_path)

    with patch("services.upload_jobs.ensure_namespace", side_effect=OverflowError("Python int too large")):
        await process_upload_job_async("session-1", final_attempt=False)

    session = await _load_session(tenant_db)
    assert session.status == "failed"
    assert session.error_code == "PROCESSING_FAILED"
    assert not file_path.exists()


@pytest.mark.asyncio
async def test_integers_beyond_bigint_load_as_decimal(tenant_db, tmp_path):
    content = "id,account\n1,123456789012345678901234\n2,5\n"
    await _create_session(tenant_db, tmp_path, content=content, filename="accounts.csv", table_name="accounts")

    await process_upload_job_async("session-1", final_attempt=False)

    session = await _load_session(tenant_db)
    assert session.status == "completed"
    assert session.rows_affected == 2
    assert [row["id"] for row in await _table_rows(tenant_db, "accounts")] == [1, 2]


@pytest.mark.asyncio
async def test_terminal_session_is_not_reprocessed(tenant_db, tmp_path):
    await _create_session(tenant_db, tmp_path, status="completed", progress_pct=100)

    with patch("services.upload_jobs._run_pipeline") as run_pipeline:
        await process_upload_job_async("session-1")

    run_pipeline.assert_not_called()
    assert (await _load_session(tenant_db)).attempts == 0


@pytest.mark.asyncio
async def test_upsert_job_updates_existing_rows(tenant_db, tmp_path):
    await _create_session(tenant_db, tmp_path, operation_type="upsert", conflict_columns=["id"])
    await process_upload_job_async("session-1")

    update_content = "ID,Customer Name,Joined,Balance,Active\n2,Grace Hopper,2024-02-01,1,no\n6,Ken,2024-06-01,2,yes\n"
    await _create_session(
        tenant_db,
        tmp_path,
        content=update_content,
        filename="customers_update.csv",
        session_id="session-2",
        operation_type="upsert",
        conflict_columns=["id"],
    )
    await process_upload_job_async("session-2")

    session = await _load_session(tenant_db, "session-2")
    assert session.status == "completed"
    rows = await _table_rows(tenant_db)
    assert [row["id"] for row in rows] == [1, 2, 3, 4, 5, 6]
    assert rows[1]["customer_name"] == "Grace Hopper"


@pytest.mark.asyncio
async def test_upload_into_existing_table_rejects_unknown_columns(tenant_db, tmp_path):
    await _create_session(tenant_db, tmp_path)
    await process_upload_job_async("session-1")

    await _create_session(
        tenant_db,
        tmp_path,
        content="ID,Nickname\n9,Ace\n",
        filename="extra.csv",
        session_id="session-2",
    )
    await process_upload_job_async("session-2")

    session = await _load_session(tenant_db, "session-2")
    assert session.status == "failed"
    assert session.error_code == "SCHEMA_MISMATCH"
    assert "nickname" in session.error_message


def test_worker_entrypoint_passes_final_attempt_from_rq_retries():
    calls = []

    async def fake_process(session_id, final_attempt=True):
        calls.append((session_id, final_attempt))

    with patch("services.upload_jobs.get_current_job", return_value=MagicMock(retries_left=2)):
        with patch("services.upload_jobs.process_upload_job_async", side_effect=fake_process):
            process_upload_job("session-1")
    with patch("services.upload_jobs.get_current_job", return_value=MagicMock(retries_left=0)):
        with patch("services.upload_jobs.process_upload_job_async", side_effect=fake_process):
            process_upload_job("session-2")

    assert calls == [("session-1", False), ("session-2", True)]
