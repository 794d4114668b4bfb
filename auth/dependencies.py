"""
auth/dependencies.py -- FastAPI Depends() helpers and error rendering for the identity core.

The session token is read from, in priority order:
  1. The session cookie (name from Settings.session_cookie_name) -- browsers.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on SessionStore.validate_session(). The wired core is expected
on app.state.identity (see core.bootstrap.build_identity_core).

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() / get_current_user() raise Unauthenticated, which
identity_error_handler renders as 401.

Guards:
    @router.get("/users/{user_id}")
    async def route(user: User = Depends(require_permissions(USERS_READ_ALL))): ...

Error body shape:
    {"error": {"code": "missing_permission", "message": "...", "detail": null}}
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from auth.errors import (
    ErrorKind,
    IdentityError,
    MissingPermission,
    ResendTooSoon,
    Unauthenticated,
)
from auth.models import Session, User

# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.VALIDATION: 422,
    ErrorKind.INTERNAL: 500,
}


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    """Render any IdentityError with the status its kind maps to.

    Internal errors keep their stable code but never expose the message of an
    underlying exception.
    """
    response = JSONResponse(
        status_code=STATUS_BY_KIND[exc.kind],
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, ResendTooSoon):
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.kind is ErrorKind.UNAUTHENTICATED:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


def install_error_handler(app: FastAPI) -> None:
    app.add_exception_handler(IdentityError, identity_error_handler)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def session_token_from_request(request: Request) -> str | None:
    identity = request.app.state.identity
    token = request.cookies.get(identity.settings.session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_current_session(request: Request) -> Session | None:
    """Return the validated Session for this request, or None. Never raises."""
    token = session_token_from_request(request)
    if token is None:
        return None
    return request.app.state.identity.sessions.validate_session(token)


def get_current_session(request: Request) -> Session:
    session = try_get_current_session(request)
    if session is None:
        raise Unauthenticated()
    return session


def get_current_user(request: Request, session: Session = Depends(get_current_session)) -> User:
    """Require authentication and return the session's live user.

    Sessions of deleted users are normally revoked by the cascade; the
    is_deleted check covers the window where that cascade failed.
    """
    user = request.app.state.identity.users.get_by_id(session.user_id)
    if user is None or user.is_deleted:
        raise Unauthenticated()
    return user


# ---------------------------------------------------------------------------
# Authorization guards
# ---------------------------------------------------------------------------


def require_permissions(*required: str) -> Callable[..., User]:
    """Dependency factory: the user must hold every permission in `required`."""

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if not request.app.state.identity.resolver.user_has_all(user, required):
            raise MissingPermission()
        return user

    return dependency


def require_any_permission(*required: str) -> Callable[..., User]:
    """Dependency factory: the user must hold at least one permission in `required`."""

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if not request.app.state.identity.resolver.user_has_any(user, required):
            raise MissingPermission()
        return user

    return dependency


def require_minimum_role(role: str) -> Callable[..., User]:
    """Dependency factory: the user's role level must be at least that of `role`."""

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if not request.app.state.identity.hierarchy.has_minimum_role(user.role, role):
            raise MissingPermission("Insufficient role.")
        return user

    return dependency
