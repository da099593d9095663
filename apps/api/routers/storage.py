"""Quota reporting and tenant namespace management."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services import datasets, quota

router = APIRouter()


class QuotaResponse(BaseModel):
    total_tables: int
    table_limit: int
    total_size_mb: float
    limit_mb: float
    available_mb: float
    usage_percent: float
    last_calculated_at: Optional[str] = None
    warnings: List[str] = []


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current usage against the tenant's table and storage ceilings."""
    summary = await quota.get_quota(auth.tenant_id, db)
    warnings = await quota.get_quota_warnings(auth.tenant_id, db)
    return QuotaResponse(**summary, warnings=warnings)


@router.post("/quota/recalculate", response_model=QuotaResponse)
async def recalculate_quota(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Resync usage from the backing store's own size accounting."""
    await quota.recalculate(auth.tenant_id)
    summary = await quota.get_quota(auth.tenant_id, db)
    warnings = await quota.get_quota_warnings(auth.tenant_id, db)
    return QuotaResponse(**summary, warnings=warnings)


@router.delete("/namespace")
async def drop_namespace(
    confirm: Optional[str] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
):
    """Irreversibly drop every table and record for the tenant."""
    return await datasets.drop_tenant_namespace(auth.tenant_id, confirm)
