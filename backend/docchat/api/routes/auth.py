"""
Authentication API routes.

Handles:
- OIDC login redirect (PKCE + state) and callback
- Token refresh for the signed-in user (manual, periodic or after a 401),
  renewing the session on success
- Client visibility changes driving the periodic refresh timer
- Sign-out: credential store cleanup and provider logout URL

Security:
- Access/refresh tokens are stored in the credential store only; the
  session cookie carries identity, never tokens
- Login state and PKCE verifier travel in a short-lived signed cookie
- Token values are never logged
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from docchat.api.schemas.auth import (
    RefreshRequest,
    RefreshResponse,
    SignOutResponse,
    VisibilityRequest,
    VisibilityResponse,
)
from docchat.auth.coordinator import RefreshOutcome
from docchat.auth.interceptor import AuthContext, with_auth
from docchat.auth.session import LOGIN_STATE_MAX_AGE_SECONDS
from docchat.auth.token_store import TokenSet
from docchat.platform.errors import AuthenticationError, ServiceUnavailableError
from docchat.platform.oidc_client import (
    OIDCError,
    decode_claims,
    extract_brand,
    extract_roles,
    generate_code_verifier,
    generate_state,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _require_oidc_client(request: Request):
    oidc_client = request.app.state.oidc_client
    if oidc_client is None:
        raise ServiceUnavailableError("Identity provider is not configured")
    return oidc_client


def _require_registry(request: Request):
    registry = request.app.state.coordinator_registry
    if registry is None:
        raise ServiceUnavailableError("Identity provider is not configured")
    return registry


def _set_session_cookie(response: Response, request: Request, token: str) -> None:
    session_manager = request.app.state.session_manager
    response.set_cookie(
        session_manager.cookie_name,
        token,
        max_age=session_manager.max_age_seconds,
        httponly=True,
        secure=request.app.state.auth_config.secure_cookies,
        samesite="lax",
    )


@router.get("/login")
async def login(request: Request):
    """Redirect to the identity provider's authorization endpoint."""
    oidc_client = _require_oidc_client(request)
    session_manager = request.app.state.session_manager
    config = request.app.state.auth_config

    state = generate_state()
    code_verifier = generate_code_verifier()

    response = RedirectResponse(
        oidc_client.authorization_url(state, code_verifier),
        status_code=302,
    )
    response.set_cookie(
        session_manager.login_state_cookie_name,
        session_manager.issue_login_state(state, code_verifier),
        max_age=LOGIN_STATE_MAX_AGE_SECONDS,
        httponly=True,
        secure=config.secure_cookies,
        samesite="lax",
    )
    return response


@router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """
    Complete the authorization-code flow.

    Stores the token set under the user's subject and issues the
    session cookie.
    """
    oidc_client = _require_oidc_client(request)
    session_manager = request.app.state.session_manager
    credential_store = request.app.state.credential_store
    config = request.app.state.auth_config

    if error:
        logger.warning("Identity provider returned an error", extra={"error_code": error})
        raise AuthenticationError("Sign-in was not completed")

    login_state = session_manager.verify_login_state(
        request.cookies.get(session_manager.login_state_cookie_name)
    )
    if login_state is None or not code or state != login_state.state:
        logger.warning("Login callback with invalid state")
        raise AuthenticationError("Invalid or expired login state")

    try:
        tokens = await oidc_client.exchange_code(code, login_state.code_verifier)
    except OIDCError as e:
        logger.warning("Authorization code exchange failed", extra={"error": str(e)})
        raise AuthenticationError("Sign-in failed")

    access_claims = decode_claims(tokens.access_token)
    id_claims = decode_claims(tokens.id_token)
    subject = id_claims.get("sub") or access_claims.get("sub")
    if not subject:
        logger.error("Token response carries no subject")
        raise AuthenticationError("Sign-in failed")

    roles = extract_roles(access_claims, oidc_client.config.client_id)
    brand = extract_brand(access_claims) or extract_brand(id_claims)
    name = id_claims.get("name") or id_claims.get("preferred_username") or id_claims.get("email")

    await credential_store.put(
        subject,
        TokenSet(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or "",
            id_token=tokens.id_token,
            expires_at=tokens.expires_at(),
            brand=brand,
            roles=tuple(roles),
        ),
    )

    logger.info(
        "User signed in",
        extra={"subject": subject, "brand": brand, "roles": roles},
    )

    response = RedirectResponse(config.post_login_redirect, status_code=302)
    _set_session_cookie(
        response,
        request,
        session_manager.issue(subject, brand=brand, name=name, email=id_claims.get("email")),
    )
    response.delete_cookie(session_manager.login_state_cookie_name)
    return response


@router.post("/refresh", response_model=RefreshResponse)
@with_auth([])
async def refresh(
    request: Request,
    auth: AuthContext,
    body: Optional[RefreshRequest] = None,
):
    """
    Refresh the caller's tokens and renew the session.

    The trigger picks the path: manual forces a refresh, periodic only
    refreshes near expiry, unauthorized counts toward the sign-in prompt.
    Concurrent calls for the same user share one in-flight refresh.
    """
    registry = _require_registry(request)
    session_manager = request.app.state.session_manager
    trigger = body.trigger if body is not None else "manual"

    should_prompt = False
    if trigger == "unauthorized":
        outcome, should_prompt = await registry.report_unauthorized(auth.subject)
    elif trigger == "periodic":
        outcome = await registry.refresh(auth.subject, "Preventive refresh")
    else:
        outcome = await registry.refresh(auth.subject, "Client requested refresh", force=True)

    if outcome in (RefreshOutcome.FAILED, RefreshOutcome.STOPPED):
        raise AuthenticationError(
            "Session could not be renewed. Please sign in again.",
            details={"should_prompt": should_prompt},
        )

    token_set = await request.app.state.credential_store.get(auth.subject)
    claims = session_manager.verify(session_manager.read_request_token(request))
    if token_set is None or claims is None:
        raise AuthenticationError("Session could not be renewed. Please sign in again.")

    session_token = session_manager.renew(claims)
    renewed = session_manager.verify(session_token)
    from_cookie = bool(request.cookies.get(session_manager.cookie_name))

    status_code = 200 if outcome is RefreshOutcome.REFRESHED else 202
    content = RefreshResponse(
        status=outcome.value,
        expires_at=token_set.expires_at,
        session_expires_at=renewed.expires_at,
        session_token=None if from_cookie else session_token,
        should_prompt=should_prompt,
    )
    response = JSONResponse(status_code=status_code, content=content.model_dump())
    _set_session_cookie(response, request, session_token)
    logger.debug(
        "Session renewed",
        extra={"subject": auth.subject, "trigger": trigger, "outcome": outcome.value},
    )
    return response


@router.post("/visibility", response_model=VisibilityResponse)
@with_auth([])
async def visibility(request: Request, auth: AuthContext, body: VisibilityRequest):
    """
    Client foreground/background signal.

    Hidden pauses the periodic refresh timer. Visible after a real absence
    refreshes once (outcome is set) and restarts the timer.
    """
    registry = _require_registry(request)

    outcome = await registry.visibility_changed(auth.subject, body.visible)

    coordinator = registry.get(auth.subject)
    return VisibilityResponse(
        visible=body.visible,
        outcome=outcome.value if outcome is not None else None,
        timer_running=coordinator is not None and coordinator.is_running,
    )


@router.post("/signout", response_model=SignOutResponse)
async def signout(request: Request):
    """
    Delete the caller's stored credentials and return the provider logout URL.

    Succeeds even without a valid session so the client can always clear state.
    """
    session_manager = request.app.state.session_manager
    credential_store = request.app.state.credential_store
    registry = request.app.state.coordinator_registry
    oidc_client = request.app.state.oidc_client

    claims = session_manager.verify(session_manager.read_request_token(request))
    id_token = None
    if claims is not None:
        # Stop refreshes first so none can write after the delete
        if registry is not None:
            await registry.remove(claims.subject)
        token_set = await credential_store.get(claims.subject)
        id_token = token_set.id_token if token_set else None
        await credential_store.delete(claims.subject)
        logger.info("User signed out", extra={"subject": claims.subject})

    body = SignOutResponse(
        logout_url=oidc_client.end_session_url(id_token) if oidc_client else None,
    )
    response = JSONResponse(content=body.model_dump())
    response.delete_cookie(session_manager.cookie_name)
    return response
