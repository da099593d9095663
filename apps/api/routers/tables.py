"""Tenant table listing, preview and confirmed destructive operations."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from services import datasets

router = APIRouter()


class TableRecord(BaseModel):
    table_name: str
    row_count: Optional[int] = None
    size_mb: Optional[float] = None
    last_updated_at: Optional[str] = None


class TableListResponse(BaseModel):
    tables: List[TableRecord]


class TablePreviewResponse(BaseModel):
    table: str
    columns: List[str]
    rows: List[Dict[str, Any]]
    limit: int


@router.get("", response_model=TableListResponse)
async def list_tables(auth: AuthContext = Depends(get_auth_context)):
    records = await datasets.list_table_records(auth.tenant_id)
    return TableListResponse(tables=[TableRecord(**record) for record in records])


@router.get("/operations/stats")
async def get_operation_stats(auth: AuthContext = Depends(get_auth_context)):
    return await datasets.operation_stats(auth.tenant_id)


@router.get("/{table_name}/preview", response_model=TablePreviewResponse)
async def preview_table(
    table_name: str,
    limit: int = Query(100, ge=1),
    auth: AuthContext = Depends(get_auth_context),
):
    """First rows of a table, capped at the configured preview maximum."""
    preview = await datasets.preview_table(auth.tenant_id, table_name, min(limit, settings.PREVIEW_MAX_ROWS))
    return TablePreviewResponse(**preview)


@router.get("/{table_name}/operations")
async def list_table_operations(
    table_name: str,
    limit: int = Query(50, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
):
    operations = await datasets.list_operations(auth.tenant_id, table_name=table_name, limit=limit)
    return {"table_name": table_name, "operations": operations}


@router.delete("/{table_name}/rows")
async def delete_table_rows(
    table_name: str,
    ids: str = Query(..., min_length=1),
    confirm: Optional[str] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
):
    """Delete rows by id; ``confirm`` must repeat the table name."""
    row_ids = [part.strip() for part in ids.split(",") if part.strip()]
    return await datasets.delete_tenant_rows(auth.tenant_id, table_name, row_ids, confirm)


@router.delete("/{table_name}/data")
async def truncate_table(
    table_name: str,
    confirm: Optional[str] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
):
    return await datasets.truncate_tenant_table(auth.tenant_id, table_name, confirm)


@router.delete("/{table_name}")
async def drop_table(
    table_name: str,
    confirm: Optional[str] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
):
    return await datasets.drop_tenant_table(auth.tenant_id, table_name, confirm)
