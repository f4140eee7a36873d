"""
Authorization interceptor for protected route handlers.

Single chokepoint in front of every protected operation:
1. Resolve the caller from the signed session proof (cookie or bearer)
2. Load the caller's live TokenSet from the credential store
3. Enforce "any of" role membership when roles are required
4. Call the handler with an immutable AuthContext as its `auth` argument

The interceptor holds no business logic. Exceptions raised by the wrapped
handler pass through untouched.

Usage::

    @router.get("/api/settings/{brand_code}")
    @with_auth([Role.USER])
    async def get_settings(request: Request, brand_code: str, auth: AuthContext):
        ...

Services are read from request.app.state:
- session_manager (SessionManager)
- credential_store (CredentialStore)
- coordinator_registry (CoordinatorRegistry, optional)
"""

import inspect
import json
import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from docchat.auth.token_store import TokenSet
from docchat.config.auth import get_auth_config
from docchat.platform.errors import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)

AUTH_PARAMETER = "auth"
EVENT_STREAM = "text/event-stream"


class Role:
    """Application roles issued by the identity provider."""
    ADMIN = "dm_admin"
    EDITOR = "dm_editor"
    USER = "dm_user"


@dataclass(frozen=True)
class AuthContext:
    """
    Credentials resolved for the current caller.

    Built once by the interceptor and passed explicitly; handlers never
    re-derive any of this from the raw request.
    """
    subject: str
    access_token: str
    refresh_token: str
    id_token: Optional[str]
    brand: Optional[str]
    roles: tuple[str, ...]
    expires_at: int

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(role in self.roles for role in roles)

    def __repr__(self) -> str:
        return (
            f"<AuthContext(subject={self.subject}, brand={self.brand}, "
            f"roles={list(self.roles)})>"
        )


def wants_event_stream(request: Request) -> bool:
    return EVENT_STREAM in request.headers.get("accept", "")


def _event_stream_error(error: str, status_code: int) -> Response:
    body = f"data: {json.dumps({'type': 'error', 'error': error})}\n\n"
    return Response(content=body, status_code=status_code, media_type=EVENT_STREAM)


def unauthorized_response(request: Request) -> Response:
    """401 in the caller's format: one terminal SSE event or the JSON error shape."""
    if wants_event_stream(request):
        return _event_stream_error("Unauthorized", 401)
    error = AuthenticationError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def forbidden_response(request: Request) -> Response:
    if wants_event_stream(request):
        return _event_stream_error("Forbidden", 403)
    error = PermissionDeniedError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _find_request(args: tuple, kwargs: dict) -> Request:
    for arg in args:
        if isinstance(arg, Request):
            return arg
    request = kwargs.get("request")
    if request is None:
        raise ValueError("Request object not found in function arguments")
    return request


def _schedule_refresh_if_stale(request: Request, subject: str, token_set: TokenSet) -> None:
    registry = getattr(request.app.state, "coordinator_registry", None)
    if registry is None:
        return
    registry.touch(subject)

    config = getattr(request.app.state, "auth_config", None) or get_auth_config()
    threshold = config.refresh_threshold_seconds
    if token_set.seconds_until_expiry(time.time()) > threshold:
        return

    if registry.schedule_refresh(subject, "Stored token near expiry"):
        logger.info(
            "Scheduled background token refresh",
            extra={"subject": subject, "expires_at": token_set.expires_at},
        )


async def resolve_auth_context(request: Request) -> Optional[AuthContext]:
    """
    Resolve the caller's AuthContext, or None if not authenticated.

    Raises:
        CredentialStoreUnavailableError: If the credential store is down
    """
    session_manager = request.app.state.session_manager
    credential_store = request.app.state.credential_store

    claims = session_manager.verify(session_manager.read_request_token(request))
    if claims is None:
        return None

    token_set = await credential_store.get(claims.subject)
    if token_set is None or not token_set.access_token:
        logger.info(
            "No stored credentials for session",
            extra={"subject": claims.subject, "path": request.url.path},
        )
        return None

    _schedule_refresh_if_stale(request, claims.subject, token_set)

    return AuthContext(
        subject=claims.subject,
        access_token=token_set.access_token,
        refresh_token=token_set.refresh_token,
        id_token=token_set.id_token,
        brand=token_set.brand or claims.brand,
        roles=tuple(token_set.roles),
        expires_at=token_set.expires_at,
    )


def with_auth(required_roles: Optional[Iterable[str]] = None):
    """
    Decorator that gates a route handler behind authentication and roles.

    An empty role list only requires authentication. With roles, the
    caller needs at least one of them.

    The handler must accept `request: Request` and `auth: AuthContext`.
    `auth` is hidden from FastAPI's signature inspection so it is never
    treated as a query or body parameter.
    """
    roles = tuple(required_roles or ())

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)
        if AUTH_PARAMETER not in signature.parameters:
            raise TypeError(f"{func.__name__} must accept an '{AUTH_PARAMETER}' parameter")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = _find_request(args, kwargs)

            auth = await resolve_auth_context(request)
            if auth is None:
                logger.info(
                    "Rejected unauthenticated request",
                    extra={"path": request.url.path, "method": request.method},
                )
                return unauthorized_response(request)

            if roles and not auth.has_any_role(roles):
                logger.warning(
                    "Rejected request lacking required role",
                    extra={
                        "subject": auth.subject,
                        "path": request.url.path,
                        "required_roles": list(roles),
                        "roles": list(auth.roles),
                    },
                )
                return forbidden_response(request)

            kwargs[AUTH_PARAMETER] = auth
            return await func(*args, **kwargs)

        wrapper.__signature__ = signature.replace(
            parameters=[
                p for name, p in signature.parameters.items() if name != AUTH_PARAMETER
            ]
        )
        wrapper.required_roles = roles
        return wrapper

    return decorator


def protect(required_roles: Optional[Iterable[str]], operation: Callable) -> Callable:
    """Functional form of with_auth."""
    return with_auth(required_roles)(operation)
