"""
Database engine, session factory and tenant namespace scoping.
"""

from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import settings
from services.identifiers import quote_identifier


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    kwargs = {
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
    }
    if "+asyncpg" in url:
        # Every connection carries a bounded statement timeout.
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.DB_STATEMENT_TIMEOUT_MS))},
        }
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, echo=False, **_engine_kwargs(settings.DATABASE_URL))
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def dialect_name(db: AsyncSession) -> str:
    conn = await db.connection()
    return conn.dialect.name


def sqlite_namespace_path(namespace: str) -> Path:
    return Path(settings.SQLITE_NAMESPACE_DIR) / f"{namespace}.db"


async def scope_namespace(db: AsyncSession, namespace: str) -> str:
    """Bind the session's current transaction to a tenant namespace.

    Must run before any other statement of the unit of work. On Postgres the
    search path is set with ``SET LOCAL`` so it ends with the transaction; on
    SQLite the namespace database file is attached to the pooled connection.
    Returns the quoted namespace identifier.
    """
    quoted = quote_identifier(namespace)
    dialect = await dialect_name(db)
    if dialect == "postgresql":
        await db.execute(text(f"SET LOCAL search_path TO {quoted}, public"))
    elif dialect == "sqlite":
        result = await db.execute(text("PRAGMA database_list"))
        attached = {row[1]: row[2] for row in result.all()}
        if namespace in attached and not Path(attached[namespace]).exists():
            # Dropped through another pooled connection.
            await db.execute(text(f"DETACH DATABASE {quoted}"))
            del attached[namespace]
        if namespace not in attached:
            path = sqlite_namespace_path(namespace)
            path.parent.mkdir(parents=True, exist_ok=True)
            await db.execute(text(f"ATTACH DATABASE :path AS {quoted}"), {"path": str(path)})
    return quoted


async def release_namespace(db: AsyncSession, namespace: str) -> None:
    """Detach a SQLite namespace from the session's connection and delete its file."""
    result = await db.execute(text("PRAGMA database_list"))
    if namespace in {row[1] for row in result.all()}:
        await db.execute(text(f"DETACH DATABASE {quote_identifier(namespace)}"))
    await db.commit()
    sqlite_namespace_path(namespace).unlink(missing_ok=True)
