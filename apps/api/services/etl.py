"""Batched DDL/DML execution against tenant namespaces, with audit logging."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from sqlalchemy import BigInteger, Boolean, Column, Date, MetaData, Numeric, Table, Text, UniqueConstraint, text
from sqlalchemy import insert as sa_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker, dialect_name, scope_namespace
from models.etl_operation import EtlOperation
from services.errors import DuplicateTable, SchemaMismatch, TableNotFound, translate_db_error
from services.identifiers import quote_identifier, sanitize_identifier
from services.tenant_schema import count_rows, has_table
from services.type_inference import ColumnSchema, ColumnType

logger = logging.getLogger(__name__)

# Lowest bind-parameter ceiling across supported backends.
MAX_BIND_PARAMETERS = 32766

SQL_TYPES = {
    ColumnType.TEXT: Text,
    ColumnType.INTEGER: BigInteger,
    ColumnType.DECIMAL: Numeric,
    ColumnType.DATE: Date,
    ColumnType.BOOLEAN: Boolean,
}

BatchCallback = Callable[[AsyncSession, int], Awaitable[None]]


def build_table(
    namespace: str,
    name: str,
    columns: Sequence[ColumnSchema],
    unique_columns: Optional[Sequence[str]] = None,
) -> Table:
    """Schema-qualified Core table built only from sanitized identifiers."""
    sanitize_identifier(namespace)
    sanitize_identifier(name)
    column_names = [sanitize_identifier(column.name) for column in columns]
    if not column_names:
        raise SchemaMismatch("A table needs at least one column.", details={"table": name})

    args: List[Any] = [
        Column(column.name, SQL_TYPES[column.type](), nullable=column.nullable)
        for column in columns
    ]
    if unique_columns:
        unique = [sanitize_identifier(column) for column in unique_columns]
        missing = [column for column in unique if column not in column_names]
        if missing:
            raise SchemaMismatch(
                f"Conflict columns not found in table '{name}': {', '.join(missing)}",
                details={"table": name, "missing_columns": missing},
            )
        args.append(UniqueConstraint(*unique, name=f"uq_{name}_{'_'.join(unique)}"[:63]))
    return Table(name, MetaData(), *args, schema=namespace)


async def _log_operation(
    tenant_id: str,
    operation_type: str,
    table_name: str,
    status: str,
    rows_affected: int = 0,
    error_message: Optional[str] = None,
) -> None:
    """Append an audit entry in its own transaction so it survives a failed operation."""
    async with async_session_maker() as db:
        db.add(
            EtlOperation(
                tenant_id=tenant_id,
                operation_type=operation_type,
                table_name=table_name,
                status=status,
                rows_affected=int(rows_affected),
                error_message=error_message,
            )
        )
        await db.commit()


def effective_batch_size(batch_size: int, column_count: int) -> int:
    """Shrink the batch so rows x columns stays under the bind-parameter ceiling."""
    ceiling = max(MAX_BIND_PARAMETERS // max(column_count, 1), 1)
    return max(min(int(batch_size), ceiling), 1)


def _batches(rows: Iterable[Mapping[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    batch: List[Dict[str, Any]] = []
    for row in rows:
        batch.append(dict(row))
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


async def create_table(
    tenant_id: str,
    namespace: str,
    name: str,
    columns: Sequence[ColumnSchema],
    unique_columns: Optional[Sequence[str]] = None,
) -> Table:
    """Create a table from an inferred column list; raises ``DuplicateTable`` on collision."""
    table = build_table(namespace, name, columns, unique_columns)
    try:
        async with async_session_maker() as db:
            if await has_table(db, namespace, name):
                raise DuplicateTable(
                    f"Table '{name}' already exists. Please choose a different name.",
                    details={"table": name},
                )
            conn = await db.connection()
            await conn.run_sync(lambda sync_conn: table.create(sync_conn))
            await db.commit()
    except Exception as exc:
        error = translate_db_error(exc)
        await _log_operation(tenant_id, "create", name, "failed", 0, error.message)
        if error is exc:
            raise
        raise error from exc

    await _log_operation(tenant_id, "create", name, "success", 0)
    logger.info("Created table %s.%s with %s columns", namespace, name, len(columns))
    return table


def _dedupe_on_keys(batch: List[Dict[str, Any]], keys: Sequence[str]) -> List[Dict[str, Any]]:
    # One statement may not touch the same conflict key twice; the last row wins.
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for row in batch:
        by_key[tuple(row.get(key) for key in keys)] = row
    return list(by_key.values())


async def _write_batches(
    tenant_id: str,
    namespace: str,
    table: Table,
    rows: Iterable[Mapping[str, Any]],
    operation_type: str,
    batch_size: Optional[int],
    on_batch: Optional[BatchCallback],
    conflict_columns: Optional[Sequence[str]] = None,
) -> int:
    size = effective_batch_size(batch_size or settings.ETL_BATCH_SIZE, len(table.columns))
    total = 0
    batch_number = 0
    try:
        for batch in _batches(rows, size):
            batch_number += 1
            async with async_session_maker() as db:
                await scope_namespace(db, namespace)
                if conflict_columns:
                    batch = _dedupe_on_keys(batch, conflict_columns)
                    statement = _upsert_statement(await dialect_name(db), table, batch, conflict_columns)
                else:
                    statement = sa_insert(table).values(batch)
                await db.execute(statement)
                if on_batch is not None:
                    await on_batch(db, total + len(batch))
                await db.commit()
            total += len(batch)
            logger.debug("%s batch %s committed (%s rows total)", operation_type, batch_number, total)
    except Exception as exc:
        error = translate_db_error(exc)
        logger.warning(
            "%s into %s.%s stopped at batch %s after %s rows: %s",
            operation_type,
            namespace,
            table.name,
            batch_number,
            total,
            error.message,
        )
        await _log_operation(tenant_id, operation_type, table.name, "failed", total, error.message)
        if error is exc:
            raise
        raise error from exc

    await _log_operation(tenant_id, operation_type, table.name, "success", total)
    return total


def _upsert_statement(dialect: str, table: Table, batch: List[Dict[str, Any]], conflict_columns: Sequence[str]):
    dialect_insert = pg_insert if dialect == "postgresql" else sqlite_insert
    statement = dialect_insert(table).values(batch)
    updates = {
        column.name: statement.excluded[column.name]
        for column in table.columns
        if column.name not in conflict_columns
    }
    if not updates:
        return statement.on_conflict_do_nothing(index_elements=list(conflict_columns))
    return statement.on_conflict_do_update(index_elements=list(conflict_columns), set_=updates)


async def insert_rows(
    tenant_id: str,
    namespace: str,
    table_name: str,
    columns: Sequence[ColumnSchema],
    rows: Iterable[Mapping[str, Any]],
    batch_size: Optional[int] = None,
    on_batch: Optional[BatchCallback] = None,
) -> int:
    """Insert rows in file order, one multi-row statement per batch.

    Each batch commits on its own; ``on_batch`` runs inside that batch's
    transaction with the running total. A failed batch stops the run, is
    audited with the rows committed so far, and propagates.
    """
    table = build_table(namespace, table_name, columns)
    return await _write_batches(tenant_id, namespace, table, rows, "insert", batch_size, on_batch)


async def upsert_rows(
    tenant_id: str,
    namespace: str,
    table_name: str,
    columns: Sequence[ColumnSchema],
    rows: Iterable[Mapping[str, Any]],
    conflict_columns: Sequence[str],
    batch_size: Optional[int] = None,
    on_batch: Optional[BatchCallback] = None,
) -> int:
    """Insert-or-update on ``conflict_columns``; every other column takes the incoming value."""
    if not conflict_columns:
        raise SchemaMismatch("Upsert requires at least one conflict column.", details={"table": table_name})
    table = build_table(namespace, table_name, columns)
    keys = [sanitize_identifier(column) for column in conflict_columns]
    missing = [key for key in keys if key not in table.columns]
    if missing:
        raise SchemaMismatch(
            f"Conflict columns not found in table '{table_name}': {', '.join(missing)}",
            details={"table": table_name, "missing_columns": missing},
        )
    return await _write_batches(tenant_id, namespace, table, rows, "upsert", batch_size, on_batch, keys)


async def delete_rows(
    tenant_id: str,
    namespace: str,
    table_name: str,
    where_clause: str,
    params: Optional[Dict[str, Any]] = None,
) -> int:
    """Execute a bound-parameter predicate built by the caller; returns rows deleted."""
    qualified = f"{quote_identifier(namespace)}.{quote_identifier(table_name)}"
    try:
        async with async_session_maker() as db:
            await scope_namespace(db, namespace)
            result = await db.execute(text(f"DELETE FROM {qualified} WHERE {where_clause}"), params or {})
            deleted = max(int(result.rowcount or 0), 0)
            await db.commit()
    except Exception as exc:
        error = translate_db_error(exc)
        await _log_operation(tenant_id, "delete", table_name, "failed", 0, error.message)
        if error is exc:
            raise
        raise error from exc

    await _log_operation(tenant_id, "delete", table_name, "success", deleted)
    return deleted


async def drop_table(tenant_id: str, namespace: str, table_name: str) -> int:
    """Drop a table if it exists; dropping a missing table is a logged no-op."""
    qualified = f"{quote_identifier(namespace)}.{quote_identifier(table_name)}"
    rows = 0
    try:
        async with async_session_maker() as db:
            if await has_table(db, namespace, table_name):
                rows = await count_rows(db, namespace, table_name)
            await db.execute(text(f"DROP TABLE IF EXISTS {qualified}"))
            await db.commit()
    except Exception as exc:
        error = translate_db_error(exc)
        await _log_operation(tenant_id, "drop", table_name, "failed", 0, error.message)
        if error is exc:
            raise
        raise error from exc

    await _log_operation(tenant_id, "drop", table_name, "success", rows)
    return rows


async def truncate_table(tenant_id: str, namespace: str, table_name: str) -> int:
    """Remove every row, keeping the table; returns rows removed."""
    qualified = f"{quote_identifier(namespace)}.{quote_identifier(table_name)}"
    try:
        async with async_session_maker() as db:
            if not await has_table(db, namespace, table_name):
                raise TableNotFound(f"Table '{table_name}' does not exist.", details={"table": table_name})
            rows = await count_rows(db, namespace, table_name)
            if await dialect_name(db) == "postgresql":
                await db.execute(text(f"TRUNCATE TABLE {qualified}"))
            else:
                await db.execute(text(f"DELETE FROM {qualified}"))
            await db.commit()
    except Exception as exc:
        error = translate_db_error(exc)
        await _log_operation(tenant_id, "truncate", table_name, "failed", 0, error.message)
        if error is exc:
            raise
        raise error from exc

    await _log_operation(tenant_id, "truncate", table_name, "success", rows)
    return rows


async def get_preview(namespace: str, table_name: str, limit: int = 100) -> Dict[str, Any]:
    """Bounded read of the first rows; not audited."""
    bounded = max(1, min(int(limit), int(settings.PREVIEW_MAX_ROWS)))
    qualified = f"{quote_identifier(namespace)}.{quote_identifier(table_name)}"
    try:
        async with async_session_maker() as db:
            if not await has_table(db, namespace, table_name):
                raise TableNotFound(f"Table '{table_name}' does not exist.", details={"table": table_name})
            result = await db.execute(text(f"SELECT * FROM {qualified} LIMIT :limit"), {"limit": bounded})
            columns = list(result.keys())
            rows = [dict(row._mapping) for row in result.all()]
    except Exception as exc:
        error = translate_db_error(exc)
        if error is exc:
            raise
        raise error from exc
    return {"table": table_name, "columns": columns, "rows": rows, "limit": bounded}
