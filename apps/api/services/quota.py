"""Per-tenant storage quota ledger and admission control."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
from typing import Any, Dict, List, Optional
import weakref

from sqlalchemy import case, func, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, dialect_name
from models.storage_quota import StorageQuota
from models.table_metadata import TableMetadata
from models.tenant_namespace import TenantNamespace
from services.errors import LockAcquisitionFailed, QuotaCheckFailed
from services.tenant_schema import bytes_to_mb, namespace_size_bytes

logger = logging.getLogger(__name__)

TABLE_LIMIT_EXCEEDED = "TABLE_LIMIT_EXCEEDED"
STORAGE_QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"

_local_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[int, asyncio.Lock]]" = weakref.WeakKeyDictionary()


@dataclass
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    current_tables: int = 0
    table_limit: int = 0
    current_mb: float = 0.0
    limit_mb: float = 0.0

    def details(self) -> Dict[str, Any]:
        return {
            "current_tables": self.current_tables,
            "table_limit": self.table_limit,
            "current_mb": round(self.current_mb, 2),
            "limit_mb": self.limit_mb,
        }

    def __bool__(self) -> bool:
        return self.allowed


def tenant_lock_key(tenant_id: str) -> int:
    """Signed 64-bit advisory lock key derived from the tenant id."""
    digest = hashlib.sha256(str(tenant_id).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


async def _acquire_tenant_lock(tenant_id: str, db: AsyncSession) -> Optional[asyncio.Lock]:
    """Hold the tenant lock for the rest of the current transaction.

    On Postgres this is a transaction-scoped advisory lock released by commit
    or rollback. Elsewhere a process-local lock is returned and the caller
    releases it once the transaction ends.
    """
    key = tenant_lock_key(tenant_id)
    if await dialect_name(db) == "postgresql":
        await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
        return None

    loop_locks = _local_locks.setdefault(asyncio.get_running_loop(), {})
    lock = loop_locks.setdefault(key, asyncio.Lock())
    try:
        await asyncio.wait_for(lock.acquire(), timeout=settings.LOCK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise LockAcquisitionFailed(
            "The storage account is busy with another upload. Please retry shortly.",
            details={"tenant_id": tenant_id},
        ) from None
    return lock


async def get_or_init_quota(tenant_id: str, db: AsyncSession) -> StorageQuota:
    quota = await db.get(StorageQuota, tenant_id, populate_existing=True)
    if quota is not None:
        return quota
    quota = StorageQuota(
        tenant_id=tenant_id,
        total_tables=0,
        total_size_mb=0.0,
        table_limit=int(settings.DEFAULT_TABLE_LIMIT),
        limit_mb=int(settings.DEFAULT_STORAGE_LIMIT_MB),
    )
    db.add(quota)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        quota = await db.get(StorageQuota, tenant_id)
    return quota


def _decide(quota: StorageQuota, delta_mb: float, creates_table: bool, check_storage: bool = True) -> QuotaDecision:
    decision = QuotaDecision(
        allowed=True,
        current_tables=int(quota.total_tables or 0),
        table_limit=int(quota.table_limit),
        current_mb=float(quota.total_size_mb or 0.0),
        limit_mb=float(quota.limit_mb),
    )
    if creates_table and decision.current_tables >= decision.table_limit:
        decision.allowed = False
        decision.reason = TABLE_LIMIT_EXCEEDED
        decision.message = (
            f"Table limit reached ({decision.current_tables}/{decision.table_limit}). "
            "Delete a table or upgrade your plan."
        )
    elif check_storage and (
        decision.current_mb >= decision.limit_mb
        or decision.current_mb + max(float(delta_mb), 0.0) > decision.limit_mb
    ):
        decision.allowed = False
        decision.reason = STORAGE_QUOTA_EXCEEDED
        decision.message = (
            f"Storage quota exceeded. Using {decision.current_mb:.2f} MB of {decision.limit_mb:.0f} MB; "
            f"this upload needs about {float(delta_mb):.2f} MB."
        )
    return decision


async def check_available(
    tenant_id: str,
    delta_mb: float,
    db: AsyncSession,
    *,
    creates_table: bool = True,
    check_storage: bool = True,
) -> QuotaDecision:
    """Unlocked read-only admission check; over-quota is a decision, not an error."""
    try:
        quota = await get_or_init_quota(tenant_id, db)
    except Exception as exc:
        raise QuotaCheckFailed("Could not verify storage quota. Please retry.", details={"reason": str(exc)}) from exc
    return _decide(quota, delta_mb, creates_table, check_storage)


async def reserve_space(
    tenant_id: str,
    delta_mb: float,
    db: AsyncSession,
    *,
    creates_table: bool = False,
) -> QuotaDecision:
    """Re-check and reserve ``delta_mb`` with the tenant lock held.

    The reservation is added to the cached total and committed in the same
    transaction that held the lock, so concurrent callers see it. A rejection
    leaves the ledger unchanged.
    """
    await get_or_init_quota(tenant_id, db)
    await db.commit()
    lock = await _acquire_tenant_lock(tenant_id, db)
    try:
        decision = await check_available(tenant_id, delta_mb, db, creates_table=creates_table)
        if not decision.allowed:
            await db.rollback()
            return decision
        quota = await get_or_init_quota(tenant_id, db)
        quota.total_size_mb = float(quota.total_size_mb or 0.0) + max(float(delta_mb), 0.0)
        await db.commit()
        return decision
    except Exception:
        await db.rollback()
        raise
    finally:
        if lock is not None:
            lock.release()


async def claim_table_slot(tenant_id: str, db: AsyncSession) -> QuotaDecision:
    """Admit one new table against the table-count ceiling and count it.

    Storage was already reserved at admission, so only the table ceiling applies.
    """
    await get_or_init_quota(tenant_id, db)
    await db.commit()
    lock = await _acquire_tenant_lock(tenant_id, db)
    try:
        decision = await check_available(tenant_id, 0.0, db, creates_table=True, check_storage=False)
        if not decision.allowed:
            await db.rollback()
            return decision
        await increment_table_count(tenant_id, db)
        decision.current_tables += 1
        return decision
    except Exception:
        await db.rollback()
        raise
    finally:
        if lock is not None:
            lock.release()


async def increment_table_count(tenant_id: str, db: AsyncSession) -> None:
    await get_or_init_quota(tenant_id, db)
    await db.execute(
        update(StorageQuota)
        .where(StorageQuota.tenant_id == tenant_id)
        .values(total_tables=StorageQuota.total_tables + 1)
    )
    await db.commit()


async def decrement_table_count(tenant_id: str, db: AsyncSession) -> None:
    await get_or_init_quota(tenant_id, db)
    await db.execute(
        update(StorageQuota)
        .where(StorageQuota.tenant_id == tenant_id)
        .values(
            total_tables=case(
                (StorageQuota.total_tables > 0, StorageQuota.total_tables - 1),
                else_=0,
            )
        )
    )
    await db.commit()


async def recalculate(tenant_id: str, namespace: Optional[str] = None) -> StorageQuota:
    """Resync table count from metadata and size from the backing store.

    The only path allowed to lower the recorded size.
    """
    async with async_session_maker() as db:
        if namespace is None:
            namespace = (
                await db.execute(select(TenantNamespace.namespace).where(TenantNamespace.tenant_id == tenant_id))
            ).scalar_one_or_none()
        size_bytes = await namespace_size_bytes(db, namespace) if namespace else 0
        table_count = (
            await db.execute(select(func.count(TableMetadata.id)).where(TableMetadata.tenant_id == tenant_id))
        ).scalar() or 0

        await get_or_init_quota(tenant_id, db)
        await db.commit()
        lock = await _acquire_tenant_lock(tenant_id, db)
        try:
            quota = await get_or_init_quota(tenant_id, db)
            quota.total_tables = int(table_count)
            quota.total_size_mb = bytes_to_mb(size_bytes)
            quota.last_calculated_at = datetime.now(timezone.utc)
            await db.commit()
        finally:
            if lock is not None:
                lock.release()
        logger.debug(
            "Recalculated quota for tenant %s: %s tables, %.4f MB",
            tenant_id,
            quota.total_tables,
            quota.total_size_mb,
        )
        return quota


async def recalculate_all() -> int:
    """Recalculate every tenant that has a namespace; returns tenants processed."""
    async with async_session_maker() as db:
        rows = (await db.execute(select(TenantNamespace.tenant_id, TenantNamespace.namespace))).all()

    processed = 0
    for tenant_id, namespace in rows:
        try:
            await recalculate(tenant_id, namespace)
            processed += 1
        except Exception as exc:
            logger.warning("Quota recalculation failed for tenant %s: %s", tenant_id, exc)
    return processed


def _quota_dict(quota: StorageQuota) -> Dict[str, Any]:
    total_mb = float(quota.total_size_mb or 0.0)
    limit_mb = float(quota.limit_mb or 0)
    usage_percent = round((total_mb / limit_mb) * 100, 2) if limit_mb else 0.0
    return {
        "total_tables": int(quota.total_tables or 0),
        "table_limit": int(quota.table_limit or 0),
        "total_size_mb": round(total_mb, 4),
        "limit_mb": limit_mb,
        "available_mb": round(max(limit_mb - total_mb, 0.0), 4),
        "usage_percent": usage_percent,
        "last_calculated_at": quota.last_calculated_at.isoformat() if quota.last_calculated_at else None,
    }


async def get_quota(tenant_id: str, db: AsyncSession) -> Dict[str, Any]:
    quota = await get_or_init_quota(tenant_id, db)
    await db.commit()
    return _quota_dict(quota)


async def get_quota_warnings(tenant_id: str, db: AsyncSession) -> List[str]:
    quota = await get_or_init_quota(tenant_id, db)
    await db.commit()
    threshold = float(settings.QUOTA_WARNING_PERCENT)
    warnings: List[str] = []

    limit_mb = float(quota.limit_mb or 0)
    if limit_mb:
        storage_percent = (float(quota.total_size_mb or 0.0) / limit_mb) * 100
        if storage_percent >= 100:
            warnings.append("Storage quota exceeded. New uploads are blocked until space is freed.")
        elif storage_percent >= threshold:
            warnings.append(f"Storage usage is at {storage_percent:.0f}% of your {limit_mb:.0f} MB quota.")

    table_limit = int(quota.table_limit or 0)
    if table_limit:
        table_percent = (int(quota.total_tables or 0) / table_limit) * 100
        if table_percent >= 100:
            warnings.append(f"Table limit reached ({quota.total_tables}/{table_limit}).")
        elif table_percent >= threshold:
            warnings.append(f"You are using {quota.total_tables} of {table_limit} tables.")
    return warnings
