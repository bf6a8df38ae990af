from __future__ import annotations

import hashlib
import hmac
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.config import Settings, get_settings
from castline.persistence.db import get_session
from castline.services.audit import get_request_id, record_event


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    """The admin operator behind a request.

    ``admin_id`` is a stable fingerprint of the API key (or the ``X-Admin-Id``
    header under dev bypass) and is what lands in ``created_by`` and audit rows.
    """

    admin_id: str
    auth_method: str = "api_key"


class _Unauthorized(HTTPException):
    def __init__(self, message: str) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": message},
            headers={"WWW-Authenticate": "Bearer"},
        )


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        raise _Unauthorized("Missing or invalid bearer token")
    return token.strip()


def _fingerprint(token: str) -> str:
    return "key_" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def _key_matches(settings: Settings, token: str) -> bool:
    # Compare against every configured key so timing does not reveal which one matched.
    candidate = token.encode("utf-8")
    results = [
        hmac.compare_digest(key.strip().encode("utf-8"), candidate)
        for key in settings.admin_api_keys.split(",")
        if key.strip()
    ]
    return any(results)


def _authenticate(request: Request, settings: Settings) -> Principal:
    token = _bearer_token(request)
    if token is not None and settings.auth_enabled:
        if not _key_matches(settings, token):
            raise _Unauthorized("Invalid API key")
        return Principal(admin_id=_fingerprint(token))
    if settings.auth_dev_bypass:
        admin_id = request.headers.get("X-Admin-Id")
        if not admin_id:
            raise _Unauthorized("X-Admin-Id header is required in dev bypass mode")
        return Principal(admin_id=admin_id, auth_method="dev_bypass")
    if not settings.auth_enabled:
        raise _Unauthorized("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
    raise _Unauthorized("Missing API key")


async def get_admin_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    try:
        return _authenticate(request, get_settings())
    except _Unauthorized as exc:
        await record_event(
            session=db,
            actor_type="anonymous",
            actor_id=None,
            event_type="auth.access.failure",
            outcome="failure",
            resource_type="auth",
            request_id=get_request_id(request),
            metadata={"path": request.url.path, "method": request.method},
            error_code=exc.detail["code"],
        )
        raise
