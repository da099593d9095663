"""Tenant boundary: Bearer session tokens in, a validated tenant id out."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import re
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import settings


TOKEN_TYPE = "tenant_session"

# Tenant ids key metadata rows, upload paths and rate-limit counters.
TENANT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._:@-]{0,127}")

auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    tenant_id: str


def is_valid_tenant_id(tenant_id: Optional[str]) -> bool:
    return bool(tenant_id) and TENANT_ID_PATTERN.fullmatch(tenant_id) is not None


def issue_tenant_token(tenant_id: str, expires_hours: Optional[int] = None) -> str:
    """Sign a session token whose subject is ``tenant_id``."""
    if not is_valid_tenant_id(tenant_id):
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    claims = {
        "sub": tenant_id,
        "type": TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=ttl_hours)).timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def resolve_tenant(token: str) -> str:
    """Verify a session token and return its tenant id, or raise 401."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.") from exc

    if payload.get("type") != TOKEN_TYPE:
        raise HTTPException(status_code=401, detail="Invalid session token type.")
    tenant_id = payload.get("sub")
    if not isinstance(tenant_id, str) or not is_valid_tenant_id(tenant_id):
        raise HTTPException(status_code=401, detail="Session token does not name a valid tenant.")
    return tenant_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated tenant from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return AuthContext(tenant_id=resolve_tenant(credentials.credentials))
