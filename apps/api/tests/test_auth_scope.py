from datetime import datetime, timedelta, timezone

from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient
from jose import jwt
import pytest

from config import settings
from main import app
from routers.auth_scope import TOKEN_TYPE, is_valid_tenant_id, issue_tenant_token, resolve_tenant


def _sign(subject, token_type=TOKEN_TYPE, expires_in=timedelta(hours=1), secret=None):
    claims = {"type": token_type, "exp": int((datetime.now(timezone.utc) + expires_in).timestamp())}
    if subject is not None:
        claims["sub"] = subject
    return jwt.encode(claims, secret or settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.mark.parametrize("tenant_id", ["acme", "org_42", "tenant-router", "team.eu:prod", "ops@acme.io"])
def test_issued_token_resolves_to_its_tenant(tenant_id):
    assert resolve_tenant(issue_tenant_token(tenant_id)) == tenant_id


@pytest.mark.parametrize("tenant_id", ["", " acme", "acme\n", "../acme", "a b", "-acme", "x" * 129])
def test_unusable_tenant_ids_are_rejected(tenant_id):
    assert is_valid_tenant_id(tenant_id) is False
    with pytest.raises(ValueError):
        issue_tenant_token(tenant_id)
    with pytest.raises(HTTPException) as exc_info:
        resolve_tenant(_sign(tenant_id))
    assert exc_info.value.status_code == 401


@pytest.mark.parametrize(
    "token",
    [
        _sign(None),
        _sign(42),
        _sign("acme", token_type="refresh"),
        _sign("acme", expires_in=timedelta(minutes=-5)),
        _sign("acme", secret="a-different-secret-of-sufficient-length"),
        "not-a-token",
    ],
)
def test_bad_tokens_are_rejected(token):
    with pytest.raises(HTTPException) as exc_info:
        resolve_tenant(token)
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_routes_reject_token_with_invalid_tenant_subject():
    headers = {"Authorization": f"Bearer {_sign('tenant/../../etc')}"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/tables", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"] == "Session token does not name a valid tenant."
