"""Per-tenant namespace provisioning and read-only introspection."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import List, Optional

from sqlalchemy import delete, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, dialect_name, release_namespace, scope_namespace
from models.etl_operation import EtlOperation
from models.storage_quota import StorageQuota
from models.table_metadata import TableMetadata
from models.tenant_namespace import TenantNamespace
from models.upload_session import UploadSession
from services.errors import TableNotFound
from services.identifiers import quote_identifier, sanitize_identifier
from services.type_inference import ColumnSchema, column_type_from_sql

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def derive_namespace(tenant_id: str) -> str:
    """Deterministic namespace name: prefix + leading hex of sha256(tenant_id)."""
    digest = hashlib.sha256(str(tenant_id).encode("utf-8")).hexdigest()
    return sanitize_identifier(f"{settings.NAMESPACE_PREFIX}_{digest[: settings.NAMESPACE_HASH_CHARS]}")


async def get_namespace(tenant_id: str, db: AsyncSession) -> Optional[str]:
    result = await db.execute(select(TenantNamespace.namespace).where(TenantNamespace.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def _create_namespace_object(db: AsyncSession, namespace: str) -> None:
    quoted = quote_identifier(namespace)
    if await dialect_name(db) == "postgresql":
        await db.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quoted}"))
        await db.execute(text(f"GRANT ALL ON SCHEMA {quoted} TO CURRENT_USER"))
    else:
        # Attaching creates the namespace database file.
        await scope_namespace(db, namespace)


async def ensure_namespace(tenant_id: str) -> str:
    """Provision the tenant namespace and record the mapping; idempotent."""
    async with async_session_maker() as db:
        existing = await get_namespace(tenant_id, db)
        if existing:
            return existing

        namespace = derive_namespace(tenant_id)
        await _create_namespace_object(db, namespace)
        db.add(TenantNamespace(tenant_id=tenant_id, namespace=namespace))
        try:
            await db.commit()
            logger.info("Provisioned namespace %s for tenant %s", namespace, tenant_id)
        except IntegrityError:
            # A concurrent call recorded the mapping first.
            await db.rollback()
            await _create_namespace_object(db, namespace)
            await db.commit()
        return namespace


async def _namespace_table_names(db: AsyncSession, namespace: str) -> List[str]:
    await scope_namespace(db, namespace)
    conn = await db.connection()
    names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names(schema=namespace))
    return sorted(names)


async def drop_namespace(tenant_id: str) -> None:
    """Destroy the tenant namespace and every metadata row keyed by the tenant.

    Irreversible; callers confirm intent before calling.
    """
    async with async_session_maker() as db:
        namespace = await get_namespace(tenant_id, db) or derive_namespace(tenant_id)
        quoted = quote_identifier(namespace)
        is_postgres = await dialect_name(db) == "postgresql"
        if is_postgres:
            await db.execute(text(f"DROP SCHEMA IF EXISTS {quoted} CASCADE"))
        else:
            for table_name in await _namespace_table_names(db, namespace):
                await db.execute(text(f"DROP TABLE IF EXISTS {quoted}.{quote_identifier(table_name)}"))

        file_paths = (
            await db.execute(select(UploadSession.file_path).where(UploadSession.tenant_id == tenant_id))
        ).scalars().all()

        await db.execute(delete(TableMetadata).where(TableMetadata.tenant_id == tenant_id))
        await db.execute(delete(StorageQuota).where(StorageQuota.tenant_id == tenant_id))
        await db.execute(delete(EtlOperation).where(EtlOperation.tenant_id == tenant_id))
        await db.execute(delete(UploadSession).where(UploadSession.tenant_id == tenant_id))
        await db.execute(delete(TenantNamespace).where(TenantNamespace.tenant_id == tenant_id))
        await db.commit()
        if not is_postgres:
            await release_namespace(db, namespace)

    for file_path in file_paths:
        if not file_path:
            continue
        try:
            Path(file_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove upload file %s: %s", file_path, exc)
    logger.info("Dropped namespace %s for tenant %s", namespace, tenant_id)


async def list_tables(tenant_id: str) -> List[str]:
    async with async_session_maker() as db:
        namespace = await get_namespace(tenant_id, db)
        if not namespace:
            return []
        return await _namespace_table_names(db, namespace)


async def table_exists(tenant_id: str, table_name: str) -> bool:
    sanitize_identifier(table_name)
    async with async_session_maker() as db:
        namespace = await get_namespace(tenant_id, db)
        if not namespace:
            return False
        return await has_table(db, namespace, table_name)


async def has_table(db: AsyncSession, namespace: str, table_name: str) -> bool:
    sanitize_identifier(table_name)
    await scope_namespace(db, namespace)
    conn = await db.connection()
    return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(table_name, schema=namespace))


async def describe_table(db: AsyncSession, namespace: str, table_name: str) -> List[ColumnSchema]:
    """Read an existing table's column schema back from the backing store."""
    sanitize_identifier(table_name)
    if not await has_table(db, namespace, table_name):
        raise TableNotFound(
            f"Table '{table_name}' does not exist.",
            details={"table": table_name},
        )
    conn = await db.connection()
    reflected = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_columns(table_name, schema=namespace))
    return [
        ColumnSchema(
            name=column["name"],
            type=column_type_from_sql(column["type"]),
            nullable=bool(column.get("nullable", True)),
        )
        for column in reflected
    ]


async def count_rows(db: AsyncSession, namespace: str, table_name: str) -> int:
    statement = text(f"SELECT COUNT(*) FROM {quote_identifier(namespace)}.{quote_identifier(table_name)}")
    result = await db.execute(statement)
    return int(result.scalar() or 0)


async def namespace_size_bytes(db: AsyncSession, namespace: str) -> int:
    """Authoritative on-disk size of every table in the namespace."""
    sanitize_identifier(namespace)
    if await dialect_name(db) == "postgresql":
        result = await db.execute(
            text(
                "SELECT COALESCE(SUM(pg_total_relation_size(format('%I.%I', schemaname, tablename)::regclass)), 0) "
                "FROM pg_tables WHERE schemaname = :namespace"
            ),
            {"namespace": namespace},
        )
        return int(result.scalar() or 0)

    quoted = quote_identifier(namespace)
    await scope_namespace(db, namespace)
    page_count = (await db.execute(text(f"PRAGMA {quoted}.page_count"))).scalar() or 0
    freelist = (await db.execute(text(f"PRAGMA {quoted}.freelist_count"))).scalar() or 0
    page_size = (await db.execute(text(f"PRAGMA {quoted}.page_size"))).scalar() or 0
    return max(int(page_count) - int(freelist), 0) * int(page_size)


async def table_size_bytes(db: AsyncSession, namespace: str, table_name: str) -> int:
    """On-disk size of one table including indexes.

    SQLite keeps the namespace in a single file without per-table accounting,
    so there the namespace total is reported.
    """
    if await dialect_name(db) == "postgresql":
        relation = f"{quote_identifier(namespace)}.{quote_identifier(table_name)}"
        result = await db.execute(
            text("SELECT pg_total_relation_size(CAST(:relation AS regclass))"),
            {"relation": relation},
        )
        return int(result.scalar() or 0)
    return await namespace_size_bytes(db, namespace)


def bytes_to_mb(size_bytes: int) -> float:
    return round(float(size_bytes) / BYTES_PER_MB, 4)
