"""
Tenant ETL - FastAPI Backend
Upload ingestion, tenant tables and quota API.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    uploads,
    tables,
    storage,
)
from services.errors import IngestError
from services.quota import recalculate_all
from services.retention import run_retention_sweep
from services.upload_queue import recover_stalled_uploads


async def _periodic_quota_recalculation() -> None:
    interval_minutes = max(int(settings.QUOTA_RECALC_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            processed = await recalculate_all()
            if processed:
                print(f"📊 Quota recalculation: tenants={processed}")
        except Exception as exc:
            print(f"⚠️ Quota recalculation tick failed: {exc}")


async def _periodic_retention_sweep() -> None:
    interval_minutes = max(int(settings.RETENTION_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            summary = await run_retention_sweep()
            if any(summary.values()):
                print(
                    f"🧹 Retention sweep: sessions={summary['sessions']} "
                    f"operations={summary['operations']} files={summary['files']}"
                )
        except Exception as exc:
            print(f"⚠️ Retention sweep tick failed: {exc}")


async def _cancel(task) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Tenant ETL API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_uploads(settings.STALLED_SESSION_MINUTES)
        if recovered:
            print(f"♻️ Recovered {recovered} stalled upload sessions after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled upload recovery skipped: {exc}")

    quota_task = None
    retention_task = None
    if int(settings.QUOTA_RECALC_INTERVAL_MINUTES) > 0:
        quota_task = asyncio.create_task(_periodic_quota_recalculation())
        print(f"📅 Quota recalculation loop enabled (every {int(settings.QUOTA_RECALC_INTERVAL_MINUTES)} min).")
    if int(settings.RETENTION_SWEEP_INTERVAL_MINUTES) > 0:
        retention_task = asyncio.create_task(_periodic_retention_sweep())
        print(f"📅 Retention sweep loop enabled (every {int(settings.RETENTION_SWEEP_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    await _cancel(quota_task)
    await _cancel(retention_task)
    print("👋 Shutting down API...")


app = FastAPI(
    title="Tenant ETL API",
    description="Load CSV and Excel files into isolated per-tenant tables",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IngestError)
async def ingest_error_handler(request: Request, exc: IngestError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
app.include_router(tables.router, prefix="/tables", tags=["Tables"])
app.include_router(storage.router, tags=["Storage"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Tenant ETL API",
        "version": "0.1.0",
        "status": "running"
    }
