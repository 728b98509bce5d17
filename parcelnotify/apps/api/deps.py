from __future__ import annotations

import secrets
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.core.config import get_settings
from parcelnotify.persistence.db import get_session
from parcelnotify.services.scheduler import SmsScheduler


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


class AdminPrincipal(BaseModel):
    # Recorded as dismissed_by / requested_by on operator actions.
    operator: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin(
    authorization: str | None = Header(default=None),
    x_operator: str | None = Header(default=None),
) -> AdminPrincipal:
    expected = get_settings().admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ADMIN_DISABLED", "message": "Admin API token is not configured"},
        )
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _auth_error("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not secrets.compare_digest(token.encode(), expected.encode()):
        raise _auth_error("Invalid bearer token")
    return AdminPrincipal(operator=(x_operator or "admin").strip()[:128] or "admin")


def get_scheduler(request: Request) -> SmsScheduler:
    # Built lazily so the app starts even when the transport is misconfigured.
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        scheduler = SmsScheduler()
        request.app.state.scheduler = scheduler
    return scheduler
