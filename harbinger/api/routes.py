from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from harbinger.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
)
from harbinger.logging import get_logger
from harbinger.service.gate import AuthContext
from harbinger.service.runtime import Runtime
from harbinger.storage.redis_cache import RedisCache

logger = get_logger(__name__)

router = APIRouter(prefix="/users")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def require_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Admission dependency for protected routes.

    Leaves the verified claims on ``request.state.claims`` and the raw token
    on ``request.state.token`` for handlers further down.
    """
    runtime = get_runtime(request)
    ctx = await runtime.gate.admit(
        authorization, timeout=runtime.settings.redis_operation_timeout
    )
    request.state.claims = ctx.claims
    request.state.token = ctx.token
    return ctx


@router.post("/register", response_model=Envelope, status_code=201, tags=["users"])
async def register(body: RegisterRequest, request: Request):
    """Create an account.

    Raises:
        409: username or email already taken
        422: body failed validation
    """
    runtime = get_runtime(request)
    user = await runtime.sessions.register(body.username, body.email, body.password)
    return Envelope(status="ok", data=RegisterResponse(id=user.id, username=user.username))


@router.post("/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime(request)
    token = await runtime.sessions.login(body.username, body.password)
    claims = runtime.codec.verify(token, runtime.settings.jwt_secret)
    return Envelope(
        status="ok",
        data=LoginResponse(token=token, expires_at=claims.expires_at),
    )


@router.post("/logout", response_model=Envelope, tags=["users"])
async def logout(request: Request, auth: AuthContext = Depends(require_auth)):
    """Revoke the presented token and sweep the caller's session markers.

    Both run inside one request deadline; a sweep cut short by it is reported
    through ``purge_complete``.
    """
    runtime = get_runtime(request)
    deadline = RedisCache.deadline_after(runtime.settings.logout_deadline_seconds)
    result = await runtime.sessions.logout(auth.token, auth.claims, deadline=deadline)
    return Envelope(
        status="ok",
        data=LogoutResponse(
            sessions_purged=result.sessions_purged,
            purge_complete=result.purge_complete,
        ),
    )


@router.get("/profile", response_model=Envelope, tags=["users"])
async def profile(request: Request, auth: AuthContext = Depends(require_auth)):
    runtime = get_runtime(request)
    found, source = await runtime.profiles.lookup(auth.user_id)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            id=found.id,
            username=found.username,
            email=found.email,
            created_at=found.created_at,
            updated_at=found.updated_at,
            source=source,
        ),
    )
