"""
Redis-backed credential store for per-user OIDC token sets.

Provides:
- One TokenSet per subject, written atomically in a single transaction
- Store-level TTL = token expiry - now + grace window
- Explicit, idempotent deletion on sign-out
- Conditional replace (WATCH) so a refresh finishing after sign-out
  cannot bring deleted credentials back

Key schema:
- user:{sub}:tokens -> HASH {subject, accessToken, refreshToken, idToken,
                             expiresAt, brand, roles (JSON list)}

Unlike best-effort caches, a Redis outage here is a HARD failure: callers
receive CredentialStoreUnavailableError. Falling back to process memory
would give different server instances different views of who is signed in.
"""

import dataclasses
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from docchat.config.auth import get_auth_config, parse_env_int
from docchat.platform.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class CredentialStoreUnavailableError(ServiceUnavailableError):
    """Raised when the credential store cannot be reached (503)."""

    def __init__(self, message: str = "Credential store unavailable"):
        super().__init__(message)


@dataclass(frozen=True)
class TokenSet:
    """
    Live OIDC credentials for one authenticated subject.

    expires_at is the absolute access-token expiry in epoch seconds.
    subject is filled in by the store from the record key.
    """
    access_token: str
    refresh_token: str
    expires_at: int
    id_token: Optional[str] = None
    brand: Optional[str] = None
    roles: tuple[str, ...] = field(default_factory=tuple)
    subject: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"<TokenSet(subject={self.subject}, brand={self.brand}, "
            f"roles={list(self.roles)}, expires_at={self.expires_at})>"
        )

    def seconds_until_expiry(self, now: Optional[float] = None) -> float:
        current = time.time() if now is None else now
        return self.expires_at - current

    def to_hash(self) -> dict[str, str]:
        """Flat field map persisted under the subject key."""
        return {
            "subject": self.subject or "",
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "idToken": self.id_token or "",
            "expiresAt": str(int(self.expires_at)),
            "brand": self.brand or "",
            "roles": json.dumps(list(self.roles)),
        }

    @classmethod
    def from_hash(cls, data: dict) -> "TokenSet":
        decoded = {
            (k.decode("utf-8") if isinstance(k, bytes) else k):
            (v.decode("utf-8") if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        try:
            expires_at = int(decoded.get("expiresAt") or 0)
        except ValueError:
            expires_at = 0
        try:
            roles = json.loads(decoded.get("roles") or "[]")
        except json.JSONDecodeError:
            roles = []
        return cls(
            access_token=decoded.get("accessToken", ""),
            refresh_token=decoded.get("refreshToken", ""),
            id_token=decoded.get("idToken") or None,
            expires_at=expires_at,
            brand=decoded.get("brand") or None,
            roles=tuple(str(r) for r in roles if isinstance(r, str)),
            subject=decoded.get("subject") or None,
        )


def token_key(subject: str) -> str:
    return f"user:{subject}:tokens"


class CredentialStore:
    """
    Durable, TTL-bounded storage of one TokenSet per subject.

    SECURITY:
    - Token values are NEVER logged; only subject and TTL
    - get() returns None for a missing record; that means "not authenticated"
    """

    def __init__(
        self,
        redis_client,
        grace_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self._grace_seconds = (
            grace_seconds if grace_seconds is not None
            else get_auth_config().store_ttl_grace_seconds
        )
        self._clock = clock

    @classmethod
    def from_env(cls) -> "CredentialStore":
        """
        Build a store from REDIS_URL / REDIS_PASSWORD.

        Connect and command timeouts are read in milliseconds.
        """
        url = os.getenv("REDIS_URL", DEFAULT_REDIS_URL)
        client = redis.Redis.from_url(
            url,
            password=os.getenv("REDIS_PASSWORD") or None,
            decode_responses=True,
            socket_connect_timeout=parse_env_int("REDIS_CONNECT_TIMEOUT", 5000) / 1000.0,
            socket_timeout=parse_env_int("REDIS_COMMAND_TIMEOUT", 3000) / 1000.0,
        )
        return cls(client)

    def ttl_for(self, token_set: TokenSet) -> int:
        """Store TTL in seconds, clamped at zero."""
        ttl = int(token_set.expires_at - self._clock()) + self._grace_seconds
        return max(ttl, 0)

    async def put(self, subject: str, token_set: TokenSet) -> None:
        """
        Replace the subject's TokenSet atomically and reset its TTL.

        Raises:
            CredentialStoreUnavailableError: If Redis is unreachable
        """
        key = token_key(subject)
        token_set = dataclasses.replace(token_set, subject=subject)
        ttl = self.ttl_for(token_set)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                self._queue_write(pipe, key, token_set, ttl)
                await pipe.execute()
        except RedisError as e:
            logger.error(
                "Failed to store token set",
                extra={"subject": subject, "error_type": type(e).__name__},
            )
            raise CredentialStoreUnavailableError() from e

        logger.debug(
            "Stored token set",
            extra={"subject": subject, "ttl_seconds": ttl},
        )

    async def replace(self, subject: str, token_set: TokenSet) -> bool:
        """
        Overwrite the subject's TokenSet only while a record still exists.

        Used by refresh: if the subject signed out (or the record changed
        underneath us) nothing is written and False is returned.

        Raises:
            CredentialStoreUnavailableError: If Redis is unreachable
        """
        key = token_key(subject)
        token_set = dataclasses.replace(token_set, subject=subject)
        ttl = self.ttl_for(token_set)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if not await pipe.exists(key):
                    logger.info(
                        "Token set removed before refresh completed; not stored",
                        extra={"subject": subject},
                    )
                    return False
                pipe.multi()
                self._queue_write(pipe, key, token_set, ttl)
                await pipe.execute()
        except WatchError:
            logger.info(
                "Token set changed during refresh; not stored",
                extra={"subject": subject},
            )
            return False
        except RedisError as e:
            logger.error(
                "Failed to store token set",
                extra={"subject": subject, "error_type": type(e).__name__},
            )
            raise CredentialStoreUnavailableError() from e

        logger.debug(
            "Replaced token set",
            extra={"subject": subject, "ttl_seconds": ttl},
        )
        return True

    @staticmethod
    def _queue_write(pipe, key: str, token_set: TokenSet, ttl: int) -> None:
        pipe.delete(key)
        pipe.hset(key, mapping=token_set.to_hash())
        pipe.expire(key, ttl)

    async def get(self, subject: str) -> Optional[TokenSet]:
        """Return the subject's TokenSet, or None if absent."""
        try:
            data = await self._redis.hgetall(token_key(subject))
        except RedisError as e:
            logger.error(
                "Failed to read token set",
                extra={"subject": subject, "error_type": type(e).__name__},
            )
            raise CredentialStoreUnavailableError() from e

        if not data:
            return None
        token_set = TokenSet.from_hash(data)
        if token_set.subject != subject:
            token_set = dataclasses.replace(token_set, subject=subject)
        return token_set

    async def delete(self, subject: str) -> None:
        """Remove the subject's TokenSet. Deleting a missing record is a no-op."""
        try:
            removed = await self._redis.delete(token_key(subject))
        except RedisError as e:
            logger.error(
                "Failed to delete token set",
                extra={"subject": subject, "error_type": type(e).__name__},
            )
            raise CredentialStoreUnavailableError() from e

        logger.info(
            "Deleted token set",
            extra={"subject": subject, "existed": bool(removed)},
        )

    async def ping(self) -> bool:
        """Connectivity check used by readiness probes."""
        try:
            return bool(await self._redis.ping())
        except RedisError:
            logger.warning("Credential store ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._redis.aclose()


# --------------------------------------------------------------------------
# Module-level singleton
# --------------------------------------------------------------------------

_credential_store: Optional[CredentialStore] = None


def get_credential_store() -> CredentialStore:
    """Factory returning a module-level CredentialStore singleton."""
    global _credential_store
    if _credential_store is None:
        _credential_store = CredentialStore.from_env()
        logger.info("CredentialStore initialized")
    return _credential_store
