"""
Server-side token refresh for stored OIDC token sets.

Loads a subject's TokenSet from the credential store, decides whether it
is close enough to expiry to refresh, runs the refresh-token grant, and
writes the new set back with a conditional replace, so a sign-out that
lands while the provider call is pending wins.

SECURITY REQUIREMENTS:
- Token values are never logged or returned in RefreshResult
- Roles, brand and identity token carry over unchanged unless the
  provider issues a new identity token

Usage:
    service = TokenRefreshService(credential_store, oidc_client)
    result = await service.refresh_if_needed(subject)
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from docchat.auth.token_store import CredentialStore, TokenSet
from docchat.config.auth import get_auth_config
from docchat.platform.oidc_client import (
    OIDCClient,
    RefreshRejectedError,
    RefreshTransientError,
)

logger = logging.getLogger(__name__)


class RefreshResultStatus(str, Enum):
    """Result status for refresh operations."""
    SUCCESS = "success"
    NOT_NEEDED = "not_needed"
    NOT_POSSIBLE = "not_possible"
    FAILED = "failed"


@dataclass
class RefreshResult:
    """
    Result of a token refresh operation.

    SECURITY: Does NOT include token values.
    """
    status: RefreshResultStatus
    subject: str
    new_expires_at: Optional[int] = None
    error_message: Optional[str] = None
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (RefreshResultStatus.SUCCESS, RefreshResultStatus.NOT_NEEDED)


class TokenRefreshService:
    """
    Refreshes one subject's stored token set against the identity provider.

    Credential store outages propagate as CredentialStoreUnavailableError;
    provider failures are reported through RefreshResult.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        oidc_client: OIDCClient,
        refresh_threshold_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = credential_store
        self.oidc = oidc_client
        self.refresh_threshold_seconds = (
            refresh_threshold_seconds if refresh_threshold_seconds is not None
            else get_auth_config().refresh_threshold_seconds
        )
        self._clock = clock

    def needs_refresh(self, token_set: TokenSet) -> bool:
        """True when the access token expires within the refresh threshold."""
        return token_set.seconds_until_expiry(self._clock()) <= self.refresh_threshold_seconds

    async def refresh_if_needed(self, subject: str, force: bool = False) -> RefreshResult:
        """
        Refresh the subject's tokens if they are near expiry (or forced).

        Args:
            subject: Stable user identifier
            force: Refresh even if the token is not near expiry

        Returns:
            RefreshResult describing the outcome
        """
        token_set = await self.store.get(subject)
        if token_set is None:
            return RefreshResult(
                status=RefreshResultStatus.NOT_POSSIBLE,
                subject=subject,
                error_message="No stored credentials",
            )

        if not token_set.refresh_token:
            return RefreshResult(
                status=RefreshResultStatus.NOT_POSSIBLE,
                subject=subject,
                error_message="No refresh token available",
            )

        if not force and not self.needs_refresh(token_set):
            return RefreshResult(
                status=RefreshResultStatus.NOT_NEEDED,
                subject=subject,
                new_expires_at=token_set.expires_at,
            )

        return await self._do_refresh(subject, token_set)

    async def _do_refresh(self, subject: str, token_set: TokenSet) -> RefreshResult:
        try:
            response = await self.oidc.refresh(token_set.refresh_token)
        except RefreshTransientError as e:
            logger.warning(
                "Token refresh failed transiently",
                extra={"subject": subject, "error": str(e)},
            )
            return RefreshResult(
                status=RefreshResultStatus.FAILED,
                subject=subject,
                error_message=str(e),
                retryable=True,
            )
        except RefreshRejectedError as e:
            logger.error(
                "Token refresh rejected by provider",
                extra={"subject": subject, "error_code": e.error_code},
            )
            return RefreshResult(
                status=RefreshResultStatus.FAILED,
                subject=subject,
                error_message=str(e),
                retryable=False,
            )

        refreshed = TokenSet(
            access_token=response.access_token,
            refresh_token=response.refresh_token or token_set.refresh_token,
            id_token=response.id_token or token_set.id_token,
            expires_at=response.expires_at(self._clock()),
            brand=token_set.brand,
            roles=token_set.roles,
            subject=subject,
        )
        if not await self.store.replace(subject, refreshed):
            return RefreshResult(
                status=RefreshResultStatus.NOT_POSSIBLE,
                subject=subject,
                error_message="Credentials removed during refresh",
            )

        logger.info(
            "Token set refreshed",
            extra={"subject": subject, "new_expires_at": refreshed.expires_at},
        )
        return RefreshResult(
            status=RefreshResultStatus.SUCCESS,
            subject=subject,
            new_expires_at=refreshed.expires_at,
        )
