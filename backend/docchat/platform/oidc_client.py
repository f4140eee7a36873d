"""
OIDC identity provider client (Keycloak endpoint layout).

Handles:
- Authorization-code login with PKCE (S256) and state
- Refresh-token grant
- UMA permission lookup (requesting-party token, permissions mode)
- Logout redirect URL
- Normalizing provider claims into fixed role / permission shapes

SECURITY:
- Client secret is read from the environment and never logged
- Token values are never logged; only status codes and error codes
- Provider-native claim objects never leave this module; callers get
  plain role lists and StructuredPermissions
"""

import base64
import hashlib
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import jwt

from docchat.config.auth import get_auth_config

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = "openid profile email offline_access"
DEFAULT_TIMEOUT_SECONDS = 10.0
UMA_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:uma-ticket"

# resource name -> sorted unique scopes
StructuredPermissions = dict[str, list[str]]


@dataclass(frozen=True)
class OIDCConfig:
    """Identity provider configuration from environment."""
    issuer: str
    client_id: str
    client_secret: str
    scopes: str = DEFAULT_SCOPES
    redirect_uri: Optional[str] = None
    post_logout_redirect_uri: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> Optional["OIDCConfig"]:
        """Load configuration from environment variables."""
        issuer = os.getenv("OIDC_ISSUER")
        client_id = os.getenv("OIDC_CLIENT_ID")
        client_secret = os.getenv("OIDC_CLIENT_SECRET")

        if not issuer or not client_id or not client_secret:
            logger.warning(
                "OIDC provider not fully configured",
                extra={
                    "has_issuer": bool(issuer),
                    "has_client_id": bool(client_id),
                    "has_client_secret": bool(client_secret),
                }
            )
            return None

        try:
            timeout = float(os.getenv("OIDC_HTTP_TIMEOUT", DEFAULT_TIMEOUT_SECONDS))
        except ValueError:
            timeout = DEFAULT_TIMEOUT_SECONDS

        return cls(
            issuer=issuer.rstrip("/"),
            client_id=client_id,
            client_secret=client_secret,
            scopes=os.getenv("OIDC_SCOPES", DEFAULT_SCOPES),
            redirect_uri=os.getenv("OIDC_REDIRECT_URI"),
            post_logout_redirect_uri=os.getenv("OIDC_POST_LOGOUT_REDIRECT_URI"),
            timeout_seconds=timeout,
        )

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/token"

    @property
    def end_session_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/logout"


class OIDCError(Exception):
    """Raised when an identity provider operation fails."""
    pass


class RefreshTransientError(OIDCError):
    """Network error, timeout or 5xx from the token endpoint. Retryable."""
    pass


class RefreshRejectedError(OIDCError):
    """The provider rejected the grant (4xx, e.g. invalid_grant). Not retryable."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


@dataclass(frozen=True)
class OIDCTokenResponse:
    """
    Token endpoint response.

    SECURITY: __repr__ is overridden so tokens never end up in logs.
    """
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    id_token: Optional[str] = None

    def expires_at(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return int(current) + int(self.expires_in)

    def __repr__(self) -> str:
        return (
            f"<OIDCTokenResponse(expires_in={self.expires_in}, "
            f"has_refresh_token={bool(self.refresh_token)}, "
            f"has_id_token={bool(self.id_token)})>"
        )


# ============================================================================
# PKCE / state helpers
# ============================================================================

def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """RFC 7636 verifier: 43-128 unreserved characters."""
    return secrets.token_urlsafe(64)


def code_challenge(code_verifier: str) -> str:
    """S256 challenge for a verifier."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# ============================================================================
# Claim normalization
# ============================================================================

def decode_claims(token: Optional[str]) -> dict[str, Any]:
    """
    Read the claims of a provider-issued JWT without verifying it.

    Only used on tokens received directly from the token endpoint over TLS.
    Returns an empty dict for opaque or malformed tokens.
    """
    if not token:
        return {}
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        logger.debug("Token is not a decodable JWT")
        return {}


def extract_roles(claims: dict[str, Any], client_id: Optional[str] = None) -> list[str]:
    """
    Realm roles followed by client roles, de-duplicated in first-seen order.
    """
    collected: list[str] = []

    realm_access = claims.get("realm_access")
    if isinstance(realm_access, dict):
        collected.extend(realm_access.get("roles") or [])

    resource_access = claims.get("resource_access")
    if client_id and isinstance(resource_access, dict):
        client_access = resource_access.get(client_id)
        if isinstance(client_access, dict):
            collected.extend(client_access.get("roles") or [])

    roles: list[str] = []
    for role in collected:
        if isinstance(role, str) and role not in roles:
            roles.append(role)
    return roles


def extract_brand(claims: dict[str, Any]) -> Optional[str]:
    """Brand code claim; list-valued claims use their first entry."""
    brand = claims.get("brand")
    if isinstance(brand, list):
        brand = brand[0] if brand else None
    if brand is None:
        return None
    brand = str(brand).strip()
    return brand or None


def group_permissions(permission_claims: list[dict[str, Any]]) -> StructuredPermissions:
    """
    Group UMA permission claims by resource.

    Claims without a resource name are skipped.
    """
    grouped: dict[str, set[str]] = {}
    for claim in permission_claims or []:
        if not isinstance(claim, dict):
            continue
        resource = claim.get("rsname")
        if not resource:
            continue
        scopes = grouped.setdefault(resource, set())
        scopes.update(s for s in (claim.get("scopes") or []) if isinstance(s, str))
    return {resource: sorted(scopes) for resource, scopes in grouped.items()}


def has_permission(permissions: StructuredPermissions, resource: str, scope: str) -> bool:
    return scope in permissions.get(resource, [])


# ============================================================================
# Client
# ============================================================================

class OIDCClient:
    """
    Async client for the identity provider's OIDC endpoints.

    Every request carries the configured timeout. A timeout is classified
    exactly like any other transient failure.
    """

    def __init__(
        self,
        config: OIDCConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        default_expiry_seconds: int = 3600,
    ):
        self.config = config
        self.default_expiry_seconds = default_expiry_seconds
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.timeout_seconds
        )

    async def aclose(self) -> None:
        await self._http_client.aclose()

    def authorization_url(self, state: str, code_verifier: str) -> str:
        """Build the redirect URL that starts an authorization-code login."""
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "scope": self.config.scopes,
            "state": state,
            "code_challenge": code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        if self.config.redirect_uri:
            params["redirect_uri"] = self.config.redirect_uri
        return f"{self.config.authorization_endpoint}?{urlencode(params)}"

    def end_session_url(self, id_token: Optional[str] = None) -> str:
        """Build the provider logout redirect URL."""
        params = {"client_id": self.config.client_id}
        if id_token:
            params["id_token_hint"] = id_token
        if self.config.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.config.post_logout_redirect_uri
        return f"{self.config.end_session_endpoint}?{urlencode(params)}"

    async def _post_token(self, data: dict[str, str], operation: str) -> dict[str, Any]:
        """
        POST to the token endpoint and classify failures.

        Raises:
            RefreshTransientError: Network error, timeout, 5xx or bad body
            RefreshRejectedError: 4xx response
        """
        try:
            response = await self._http_client.post(
                self.config.token_endpoint,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "Token endpoint timed out",
                extra={"operation": operation},
            )
            raise RefreshTransientError(f"{operation}: timeout") from e
        except httpx.HTTPError as e:
            logger.warning(
                "Token endpoint unreachable",
                extra={"operation": operation, "error_type": type(e).__name__},
            )
            raise RefreshTransientError(f"{operation}: network error") from e

        if response.status_code >= 500:
            logger.warning(
                "Token endpoint server error",
                extra={"operation": operation, "status_code": response.status_code},
            )
            raise RefreshTransientError(
                f"{operation}: provider returned {response.status_code}"
            )

        if response.status_code >= 400:
            error_code = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                error_code = body.get("error")
            logger.warning(
                "Token endpoint rejected request",
                extra={
                    "operation": operation,
                    "status_code": response.status_code,
                    "error_code": error_code,
                },
            )
            raise RefreshRejectedError(
                f"{operation}: provider rejected request ({error_code or response.status_code})",
                error_code=error_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise RefreshTransientError(f"{operation}: invalid JSON response") from e

    def _parse_token_response(
        self,
        payload: Any,
        previous_refresh_token: Optional[str] = None,
    ) -> OIDCTokenResponse:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise RefreshTransientError("Token response missing access_token")

        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None

        return OIDCTokenResponse(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            id_token=payload.get("id_token"),
            expires_in=expires_in if expires_in is not None else self.default_expiry_seconds,
        )

    async def exchange_code(self, code: str, code_verifier: str) -> OIDCTokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            OIDCError: If the exchange fails for any reason
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        if self.config.redirect_uri:
            data["redirect_uri"] = self.config.redirect_uri

        try:
            payload = await self._post_token(data, operation="code_exchange")
            return self._parse_token_response(payload)
        except (RefreshTransientError, RefreshRejectedError) as e:
            raise OIDCError(f"Authorization code exchange failed: {e}") from e

    async def refresh(self, refresh_token: str) -> OIDCTokenResponse:
        """
        Run the refresh-token grant.

        The prior refresh token is kept when the provider does not rotate it.

        Raises:
            RefreshTransientError: Retryable failure
            RefreshRejectedError: Provider rejected the refresh token
        """
        payload = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
            operation="refresh",
        )
        return self._parse_token_response(payload, previous_refresh_token=refresh_token)

    async def fetch_permissions(self, access_token: str) -> list[dict[str, Any]]:
        """
        Fetch UMA permission claims for the caller.

        A 403 means the caller holds no permissions and yields an empty list.

        Raises:
            OIDCError: On any other failure
        """
        try:
            response = await self._http_client.post(
                self.config.token_endpoint,
                data={
                    "grant_type": UMA_GRANT_TYPE,
                    "audience": self.config.client_id,
                    "response_mode": "permissions",
                },
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise OIDCError("Permission lookup failed: network error") from e

        if response.status_code == 403:
            return []
        if response.status_code >= 400:
            logger.warning(
                "Permission lookup rejected",
                extra={"status_code": response.status_code},
            )
            raise OIDCError(f"Permission lookup failed ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as e:
            raise OIDCError("Permission lookup returned invalid JSON") from e
        return payload if isinstance(payload, list) else []


# --------------------------------------------------------------------------
# Module-level singleton
# --------------------------------------------------------------------------

_oidc_client: Optional[OIDCClient] = None


def get_oidc_client() -> Optional[OIDCClient]:
    """
    Factory returning a module-level OIDCClient, or None when unconfigured.
    """
    global _oidc_client
    if _oidc_client is None:
        config = OIDCConfig.from_env()
        if config is None:
            return None
        _oidc_client = OIDCClient(
            config,
            default_expiry_seconds=get_auth_config().default_token_expiry_seconds,
        )
    return _oidc_client
