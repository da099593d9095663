from contextlib import ExitStack
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit

SESSION_MAKER_TARGETS = (
    "services.tenant_schema.async_session_maker",
    "services.quota.async_session_maker",
    "services.etl.async_session_maker",
    "services.datasets.async_session_maker",
    "services.upload_queue.async_session_maker",
    "services.upload_jobs.async_session_maker",
    "services.retention.async_session_maker",
)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def tenant_db(tmp_path):
    """Temporary SQLite metadata database with namespaces attached from tmp_path."""
    db_path = tmp_path / "tenant_etl.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with ExitStack() as stack:
        for target in SESSION_MAKER_TARGETS:
            stack.enter_context(patch(target, session_maker))
        stack.enter_context(patch.object(settings, "SQLITE_NAMESPACE_DIR", str(tmp_path / "namespaces")))
        stack.enter_context(patch.object(settings, "UPLOAD_DIR", str(tmp_path / "uploads")))
        yield session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()
