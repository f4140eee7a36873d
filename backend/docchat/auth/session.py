"""
Signed session proof for browser and API callers.

The session token identifies the caller (subject, brand, display info)
and nothing more. Access and refresh tokens are deliberately NOT embedded:
they live in the credential store and are fetched per request, which also
keeps the cookie well under browser size limits.

Login flow state (OAuth state + PKCE verifier) rides in a separate
short-lived signed cookie between /login and /callback.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Request

from docchat.config.auth import AuthConfig, get_auth_config

logger = logging.getLogger(__name__)

SESSION_ALGORITHM = "HS256"
SESSION_TOKEN_TYPE = "session"
LOGIN_STATE_TOKEN_TYPE = "login_state"
LOGIN_STATE_MAX_AGE_SECONDS = 600


class SessionConfigurationError(Exception):
    """Raised when AUTH_SECRET is not configured."""
    pass


@dataclass(frozen=True)
class SessionClaims:
    """Verified claims of a session token."""
    subject: str
    brand: Optional[str]
    name: Optional[str]
    email: Optional[str]
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class LoginState:
    state: str
    code_verifier: str


class SessionManager:
    """
    Issues and verifies HS256 session tokens signed with AUTH_SECRET.

    verify() never raises for bad input: absent, tampered or expired
    tokens all come back as None so the interceptor can answer 401.
    """

    def __init__(
        self,
        secret: Optional[str],
        max_age_seconds: int = 1800,
        cookie_name: str = "docchat_session",
        login_state_cookie_name: str = "docchat_login_state",
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise SessionConfigurationError(
                "AUTH_SECRET environment variable is required for sessions"
            )
        self._secret = secret
        self.max_age_seconds = max_age_seconds
        self.cookie_name = cookie_name
        self.login_state_cookie_name = login_state_cookie_name
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Optional[AuthConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> "SessionManager":
        config = config or get_auth_config()
        return cls(
            secret=config.session_secret,
            max_age_seconds=config.session_max_age_seconds,
            cookie_name=config.session_cookie_name,
            login_state_cookie_name=config.login_state_cookie_name,
            clock=clock,
        )

    def issue(
        self,
        subject: str,
        brand: Optional[str] = None,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> str:
        """Sign a session token valid for max_age_seconds."""
        now = int(self._clock())
        payload = {
            "typ": SESSION_TOKEN_TYPE,
            "sub": subject,
            "iat": now,
            "exp": now + self.max_age_seconds,
        }
        if brand:
            payload["brand"] = brand
        if name:
            payload["name"] = name
        if email:
            payload["email"] = email
        return jwt.encode(payload, self._secret, algorithm=SESSION_ALGORITHM)

    def renew(self, claims: SessionClaims) -> str:
        """Re-issue a session for the same identity with a fresh max-age window."""
        return self.issue(claims.subject, brand=claims.brand, name=claims.name, email=claims.email)

    def _decode(self, token: str, token_type: str) -> Optional[dict]:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[SESSION_ALGORITHM],
                options={"require": ["exp", "iat", "sub"], "verify_exp": False},
            )
        except jwt.PyJWTError as e:
            logger.debug(
                "Rejected signed token",
                extra={"error_type": type(e).__name__, "token_type": token_type},
            )
            return None

        if payload.get("typ") != token_type:
            return None
        # Expiry is checked against the injectable clock
        if int(payload["exp"]) <= int(self._clock()):
            return None
        return payload

    def verify(self, token: Optional[str]) -> Optional[SessionClaims]:
        """Return claims for a valid, unexpired session token, else None."""
        if not token:
            return None
        payload = self._decode(token, SESSION_TOKEN_TYPE)
        if payload is None:
            return None
        return SessionClaims(
            subject=str(payload["sub"]),
            brand=payload.get("brand"),
            name=payload.get("name"),
            email=payload.get("email"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    def read_request_token(self, request: Request) -> Optional[str]:
        """Session cookie first, then an Authorization: Bearer header."""
        token = request.cookies.get(self.cookie_name)
        if token:
            return token

        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            return auth_header[7:].strip() or None
        return None

    def issue_login_state(self, state: str, code_verifier: str) -> str:
        now = int(self._clock())
        payload = {
            "typ": LOGIN_STATE_TOKEN_TYPE,
            "sub": "login",
            "iat": now,
            "exp": now + LOGIN_STATE_MAX_AGE_SECONDS,
            "state": state,
            "cv": code_verifier,
        }
        return jwt.encode(payload, self._secret, algorithm=SESSION_ALGORITHM)

    def verify_login_state(self, token: Optional[str]) -> Optional[LoginState]:
        if not token:
            return None
        payload = self._decode(token, LOGIN_STATE_TOKEN_TYPE)
        if payload is None or not payload.get("state") or not payload.get("cv"):
            return None
        return LoginState(state=payload["state"], code_verifier=payload["cv"])
