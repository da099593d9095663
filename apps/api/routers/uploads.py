"""Upload submission and session status router."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional
import uuid

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.errors import FileTooLarge
from services.tenant_schema import BYTES_PER_MB, derive_namespace
from services.uploads import (
    get_session_status,
    list_sessions,
    prepare_upload_request,
    serialize_session,
    session_stats,
    submit_upload,
)

router = APIRouter()

READ_CHUNK_BYTES = 1024 * 1024


class UploadAcceptedResponse(BaseModel):
    session_id: str
    table_name: str
    operation_type: str
    status: str
    progress_pct: int


class UploadSessionResponse(BaseModel):
    session_id: str
    filename: str
    table_name: str
    operation_type: str
    status: str
    progress_pct: int
    rows_committed: int
    rows_affected: Optional[int] = None
    attempts: int
    file_size_bytes: int
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class UploadSessionListResponse(BaseModel):
    sessions: List[UploadSessionResponse]


def _sanitize_filename(filename: str) -> str:
    base = os.path.basename(filename or "upload.csv")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "upload.csv"


def _split_columns(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


async def _store_upload(file: UploadFile, destination: Path) -> int:
    limit_bytes = int(settings.MAX_FILE_SIZE_MB) * BYTES_PER_MB
    destination.parent.mkdir(parents=True, exist_ok=True)
    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await file.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > limit_bytes:
                    out.close()
                    destination.unlink(missing_ok=True)
                    raise FileTooLarge(
                        f"File too large. Max upload size is {settings.MAX_FILE_SIZE_MB}MB.",
                        details={"limit_mb": settings.MAX_FILE_SIZE_MB},
                    )
                out.write(chunk)
    finally:
        await file.close()
    return total_size


@router.post("", status_code=202, response_model=UploadAcceptedResponse)
async def create_upload(
    file: UploadFile = File(...),
    table_name: Optional[str] = Form(None),
    operation_type: Literal["insert", "upsert"] = Form("insert"),
    conflict_columns: Optional[str] = Form(None),
    sheet: Optional[str] = Form(None),
    _rate_limit: None = Depends(rate_limit("upload_submit", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Accept a CSV/Excel file and queue it for loading into a tenant table."""
    filename = _sanitize_filename(file.filename or "")
    request = prepare_upload_request(
        auth.tenant_id,
        filename,
        table_name=table_name,
        operation_type=operation_type,
        conflict_columns=_split_columns(conflict_columns),
        sheet=sheet,
    )

    destination = Path(settings.UPLOAD_DIR) / derive_namespace(auth.tenant_id) / f"{uuid.uuid4().hex}_{filename}"
    total_size = await _store_upload(file, destination)
    session = await submit_upload(db, request, destination, total_size)

    return UploadAcceptedResponse(
        session_id=session.session_id,
        table_name=session.table_name,
        operation_type=session.operation_type,
        status=session.status,
        progress_pct=int(session.progress_pct or 0),
    )


@router.get("/sessions", response_model=UploadSessionListResponse)
async def list_upload_sessions(
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    sessions = await list_sessions(db, auth.tenant_id, limit=limit)
    return UploadSessionListResponse(sessions=[UploadSessionResponse(**serialize_session(s)) for s in sessions])


@router.get("/sessions/stats")
async def upload_session_stats(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await session_stats(db, auth.tenant_id)


@router.get("/sessions/{session_id}", response_model=UploadSessionResponse)
async def get_upload_session(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Poll one upload session's status and progress."""
    session = await get_session_status(db, auth.tenant_id, session_id)
    return UploadSessionResponse(**serialize_session(session))
