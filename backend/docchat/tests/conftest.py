"""
Shared pytest fixtures for docchat tests.

Provides:
- SERVER_KEY set for every test (encrypted settings need it)
- In-memory SQLite session with seeded companies
- FakeRedis: in-memory stand-in for the redis.asyncio hash commands
- IdentityProviderStub: httpx.MockTransport handler for the token endpoint
- A fully wired FastAPI app and TestClient
- FakeClock for clock-injected components
"""

import json
import time
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docchat.auth.session import SessionManager
from docchat.auth.token_store import CredentialStore, TokenSet, token_key
from docchat.config.auth import AuthConfig
from docchat.database.session import get_db_session
from docchat.db_base import Base
from docchat.main import create_app
from docchat.models import Company
from docchat.platform.oidc_client import OIDCClient, OIDCConfig

TEST_SERVER_KEY = "test-server-key-for-unit-tests"
TEST_AUTH_SECRET = "test-session-secret-0123456789abcdef"
TEST_ISSUER = "https://idp.example.com/realms/docchat"
TEST_CLIENT_ID = "docchat-app"


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_jwt(claims: dict) -> str:
    """Unsigned-looking provider token; only its claims are ever read."""
    return jwt.encode(claims, "provider-signing-key-0123456789abcdef", algorithm="HS256")


# ============================================================================
# ENVIRONMENT
# ============================================================================

@pytest.fixture(autouse=True)
def server_key(monkeypatch):
    monkeypatch.setenv("SERVER_KEY", TEST_SERVER_KEY)
    return TEST_SERVER_KEY


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def companies(db_session):
    """Two active brands and one inactive brand."""
    rows = [
        Company(code="001", name="Documinds", brand_code="1_10", is_active=True),
        Company(code="056", name="DIESEL", brand_code="2_20", is_active=True),
        Company(code="099", name="Retired Brand", brand_code="9_99", is_active=False),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {c.brand_code: c for c in rows}


# ============================================================================
# REDIS
# ============================================================================

class FakePipeline:
    """
    Queues hash commands and applies them together on execute().

    watch()/exists() run immediately, like a redis-py pipeline before
    multi(); execute() raises WatchError if a watched key changed.
    """

    def __init__(self, redis_client):
        self._redis = redis_client
        self._ops = []
        self._watched = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._watched = {}
        return False

    async def watch(self, *keys):
        self._redis._check()
        self._watched = {key: self._redis.snapshot(key) for key in keys}
        return True

    async def exists(self, key):
        self._redis._check()
        return int(key in self._redis.hashes)

    def multi(self):
        if self._redis.on_multi is not None:
            self._redis.on_multi()

    def delete(self, key):
        self._ops.append(("delete", key, None))
        return self

    def hset(self, key, mapping=None):
        self._ops.append(("hset", key, dict(mapping or {})))
        return self

    def expire(self, key, ttl):
        self._ops.append(("expire", key, ttl))
        return self

    async def execute(self):
        if self._redis.fail:
            raise RedisConnectionError("redis down")
        for key, snapshot in self._watched.items():
            if self._redis.snapshot(key) != snapshot:
                raise WatchError("Watched variable changed.")
        results = []
        for op, key, arg in self._ops:
            if op == "delete":
                existed = key in self._redis.hashes
                self._redis.hashes.pop(key, None)
                self._redis.ttls.pop(key, None)
                results.append(int(existed))
            elif op == "hset":
                self._redis.hashes.setdefault(key, {}).update(arg)
                results.append(len(arg))
            elif op == "expire":
                self._redis.ttls[key] = arg
                results.append(True)
        self._redis.transactions += 1
        return results


class FakeRedis:
    """In-memory subset of redis.asyncio.Redis used by CredentialStore."""

    def __init__(self, fail: bool = False):
        self.hashes = {}
        self.ttls = {}
        self.fail = fail
        self.transactions = 0
        # Called between WATCH and EXEC to simulate another writer
        self.on_multi = None

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    def snapshot(self, key):
        return dict(self.hashes[key]) if key in self.hashes else None

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def delete(self, key):
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def credential_store(fake_redis):
    return CredentialStore(fake_redis, grace_seconds=7200)


# ============================================================================
# IDENTITY PROVIDER
# ============================================================================

class IdentityProviderStub:
    """
    httpx.MockTransport handler keyed on grant_type.

    Set responses[grant_type] to (status, json_body) or to an exception
    instance to raise it from the transport.
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        grant_type = form.get("grant_type")
        self.calls.append((request.url.path, grant_type))

        outcome = self.responses.get(grant_type, (400, {"error": "unsupported_grant_type"}))
        if isinstance(outcome, Exception):
            raise outcome
        status, body = outcome
        return httpx.Response(status, content=json.dumps(body).encode())

    def grant_calls(self, grant_type: str) -> int:
        return sum(1 for _, grant in self.calls if grant == grant_type)


@pytest.fixture
def idp():
    return IdentityProviderStub()


@pytest.fixture
def oidc_config():
    return OIDCConfig(
        issuer=TEST_ISSUER,
        client_id=TEST_CLIENT_ID,
        client_secret="client-secret",
        redirect_uri="https://app.example.com/api/auth/callback",
        post_logout_redirect_uri="https://app.example.com/",
    )


@pytest.fixture
def oidc_client(oidc_config, idp):
    return OIDCClient(
        oidc_config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(idp)),
    )


# ============================================================================
# APPLICATION
# ============================================================================

@pytest.fixture
def auth_config():
    return AuthConfig(session_secret=TEST_AUTH_SECRET, secure_cookies=False)


@pytest.fixture
def session_manager(auth_config):
    return SessionManager.from_config(auth_config)


@pytest.fixture
def app(auth_config, credential_store, session_manager, oidc_client, db_session):
    application = create_app(
        auth_config=auth_config,
        credential_store=credential_store,
        session_manager=session_manager,
        oidc_client=oidc_client,
    )
    application.dependency_overrides[get_db_session] = lambda: db_session
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def sign_in(fake_redis, session_manager):
    """
    Store a token set for a subject and return request headers for it.

    Writes straight into FakeRedis so sync tests need no event loop.
    """

    def _sign_in(subject="user-123", roles=("dm_user",), brand="2_20", expires_in=3600):
        token_set = TokenSet(
            access_token=make_jwt({"sub": subject}),
            refresh_token="refresh-" + subject,
            id_token=make_jwt({"sub": subject, "name": "Test User", "email": "test@example.com"}),
            expires_at=int(time.time()) + expires_in,
            brand=brand,
            roles=tuple(roles),
        )
        fake_redis.hashes[token_key(subject)] = token_set.to_hash()
        token = session_manager.issue(subject, brand=brand)
        return {"Authorization": f"Bearer {token}"}

    return _sign_in
