"""Tenant-facing dataset operations: table records, previews, confirmed deletes."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func
from sqlalchemy.future import select

from database import Base, async_session_maker, scope_namespace
from models.etl_operation import EtlOperation
from models.table_metadata import TableMetadata
from services import etl, quota
from services.errors import ConfirmationRequired, InvalidIdentifier, SchemaMismatch, TableNotFound
from services.identifiers import sanitize_identifier
from services.tenant_schema import (
    bytes_to_mb,
    count_rows,
    describe_table,
    drop_namespace,
    get_namespace,
    list_tables,
    table_size_bytes,
)
from services.type_inference import coerce_value

logger = logging.getLogger(__name__)


def validate_table_name(table_name: str) -> str:
    """Strictly sanitize a tenant table name and keep it off metadata table names."""
    sanitize_identifier(table_name)
    if table_name.lower() in {name.lower() for name in Base.metadata.tables}:
        raise InvalidIdentifier(
            f"'{table_name}' is a reserved name. Please choose a different table name.",
            details={"identifier": table_name},
        )
    return table_name


def require_confirmation(confirm: Optional[str], expected: str) -> None:
    if confirm != expected:
        raise ConfirmationRequired(
            f"Confirmation required. Pass confirm={expected!r} to proceed.",
            details={"expected": expected},
        )


async def _require_namespace(tenant_id: str, table_name: str) -> str:
    async with async_session_maker() as db:
        namespace = await get_namespace(tenant_id, db)
    if not namespace:
        raise TableNotFound(f"Table '{table_name}' does not exist.", details={"table": table_name})
    return namespace


async def refresh_table_stats(tenant_id: str, namespace: str, table_name: str) -> Dict[str, Any]:
    """Recompute row count and on-disk size for one table's metadata record."""
    async with async_session_maker() as db:
        await scope_namespace(db, namespace)
        row_count = await count_rows(db, namespace, table_name)
        size_mb = bytes_to_mb(await table_size_bytes(db, namespace, table_name))

        result = await db.execute(
            select(TableMetadata).where(
                TableMetadata.tenant_id == tenant_id,
                TableMetadata.table_name == table_name,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = TableMetadata(tenant_id=tenant_id, namespace=namespace, table_name=table_name)
            db.add(record)
        record.row_count = row_count
        record.size_mb = size_mb
        record.last_updated_at = datetime.now(timezone.utc)
        await db.commit()
        return _metadata_dict(record)


async def remove_table_record(tenant_id: str, table_name: str) -> bool:
    async with async_session_maker() as db:
        result = await db.execute(
            delete(TableMetadata).where(
                TableMetadata.tenant_id == tenant_id,
                TableMetadata.table_name == table_name,
            )
        )
        await db.commit()
        return bool(result.rowcount)


def _metadata_dict(record: TableMetadata) -> Dict[str, Any]:
    return {
        "table_name": record.table_name,
        "row_count": int(record.row_count or 0),
        "size_mb": float(record.size_mb or 0.0),
        "last_updated_at": record.last_updated_at.isoformat() if record.last_updated_at else None,
    }


async def list_table_records(tenant_id: str) -> List[Dict[str, Any]]:
    """Physical tables in the namespace, joined with their cached stats."""
    names = await list_tables(tenant_id)
    async with async_session_maker() as db:
        result = await db.execute(select(TableMetadata).where(TableMetadata.tenant_id == tenant_id))
        records = {record.table_name: record for record in result.scalars().all()}

    items: List[Dict[str, Any]] = []
    for name in names:
        record = records.get(name)
        if record is not None:
            items.append(_metadata_dict(record))
        else:
            items.append({"table_name": name, "row_count": None, "size_mb": None, "last_updated_at": None})
    return items


async def preview_table(tenant_id: str, table_name: str, limit: int = 100) -> Dict[str, Any]:
    sanitize_identifier(table_name)
    namespace = await _require_namespace(tenant_id, table_name)
    return await etl.get_preview(namespace, table_name, limit)


async def drop_tenant_table(tenant_id: str, table_name: str, confirm: Optional[str]) -> Dict[str, Any]:
    sanitize_identifier(table_name)
    require_confirmation(confirm, table_name)
    async with async_session_maker() as db:
        namespace = await get_namespace(tenant_id, db)

    rows = 0
    if namespace:
        rows = await etl.drop_table(tenant_id, namespace, table_name)
    had_record = await remove_table_record(tenant_id, table_name)
    if had_record:
        async with async_session_maker() as db:
            await quota.decrement_table_count(tenant_id, db)
    if namespace:
        await quota.recalculate(tenant_id, namespace)
    logger.info("Dropped table %s for tenant %s (%s rows)", table_name, tenant_id, rows)
    return {"table_name": table_name, "dropped": True, "rows_affected": rows}


async def truncate_tenant_table(tenant_id: str, table_name: str, confirm: Optional[str]) -> Dict[str, Any]:
    sanitize_identifier(table_name)
    require_confirmation(confirm, table_name)
    namespace = await _require_namespace(tenant_id, table_name)
    rows = await etl.truncate_table(tenant_id, namespace, table_name)
    stats = await refresh_table_stats(tenant_id, namespace, table_name)
    return {"table_name": table_name, "rows_affected": rows, "stats": stats}


async def delete_tenant_rows(
    tenant_id: str,
    table_name: str,
    ids: Sequence[str],
    confirm: Optional[str],
) -> Dict[str, Any]:
    """Delete rows by ``id``; the predicate is always ``id IN (...)`` with bound values."""
    sanitize_identifier(table_name)
    require_confirmation(confirm, table_name)
    if not ids:
        raise SchemaMismatch("Provide at least one row id to delete.", details={"table": table_name})
    namespace = await _require_namespace(tenant_id, table_name)

    async with async_session_maker() as db:
        columns = await describe_table(db, namespace, table_name)
    id_column = next((column for column in columns if column.name == "id"), None)
    if id_column is None:
        raise SchemaMismatch(
            f"Table '{table_name}' has no 'id' column; rows cannot be deleted by id.",
            details={"table": table_name},
        )

    params = {f"id_{index}": coerce_value(value, id_column) for index, value in enumerate(ids)}
    where_clause = "id IN ({})".format(", ".join(f":{key}" for key in params))
    deleted = await etl.delete_rows(tenant_id, namespace, table_name, where_clause, params)
    stats = await refresh_table_stats(tenant_id, namespace, table_name)
    return {"table_name": table_name, "rows_affected": deleted, "stats": stats}


async def drop_tenant_namespace(tenant_id: str, confirm: Optional[str]) -> Dict[str, Any]:
    require_confirmation(confirm, tenant_id)
    await drop_namespace(tenant_id)
    return {"dropped": True}


def _operation_dict(operation: EtlOperation) -> Dict[str, Any]:
    return {
        "id": operation.id,
        "operation_type": operation.operation_type,
        "table_name": operation.table_name,
        "status": operation.status,
        "rows_affected": int(operation.rows_affected or 0),
        "error_message": operation.error_message,
        "created_at": operation.created_at.isoformat() if operation.created_at else None,
    }


async def list_operations(tenant_id: str, table_name: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    async with async_session_maker() as db:
        query = select(EtlOperation).where(EtlOperation.tenant_id == tenant_id)
        if table_name:
            query = query.where(EtlOperation.table_name == table_name)
        query = query.order_by(EtlOperation.created_at.desc(), EtlOperation.id.desc()).limit(max(1, min(limit, 500)))
        result = await db.execute(query)
        return [_operation_dict(operation) for operation in result.scalars().all()]


async def operation_stats(tenant_id: str) -> Dict[str, Any]:
    async with async_session_maker() as db:
        result = await db.execute(
            select(EtlOperation.status, func.count(EtlOperation.id), func.coalesce(func.sum(EtlOperation.rows_affected), 0))
            .where(EtlOperation.tenant_id == tenant_id)
            .group_by(EtlOperation.status)
        )
        by_status = {status: {"count": int(count), "rows_affected": int(rows)} for status, count, rows in result.all()}
    return {
        "total": sum(item["count"] for item in by_status.values()),
        "success": by_status.get("success", {"count": 0})["count"],
        "failed": by_status.get("failed", {"count": 0})["count"],
        "rows_affected": sum(item["rows_affected"] for item in by_status.values()),
    }
