"""
Tests for liveness / readiness endpoints and HealthChecker.
"""

import pytest
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from docchat.config.auth import PLACEHOLDER_SERVER_KEY
from docchat.database.session import reset_engine
from docchat.platform.health import HealthChecker


@pytest.fixture
def in_memory_database(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    reset_engine()
    yield
    reset_engine()


class TestHealthEndpoints:

    def test_liveness(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_readiness_ok(self, client, in_memory_database):
        response = client.get("/api/health/readiness")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_readiness_fails_without_credential_store(self, client, fake_redis, in_memory_database):
        fake_redis.fail = True

        response = client.get("/api/health/readiness")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "not_ready"
        assert data["checks"]["credential_store"]["status"] == "error"


class TestHealthChecker:

    def test_database_failure_reported(self):
        engine = MagicMock()
        engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

        result = HealthChecker(engine_factory=lambda: engine).check_database()

        assert result["status"] == "error"
        assert "down" not in result["message"]

    def test_placeholder_server_key_counts_as_missing(self, monkeypatch):
        monkeypatch.setenv("SERVER_KEY", PLACEHOLDER_SERVER_KEY)

        result = HealthChecker().check_environment_variables()

        assert "SERVER_KEY" in result["missing"]

    def test_environment_reports_names_only(self, monkeypatch):
        for var in ("OIDC_ISSUER", "OIDC_CLIENT_ID", "OIDC_CLIENT_SECRET", "AUTH_SECRET"):
            monkeypatch.setenv(var, "value-" + var)

        result = HealthChecker().check_environment_variables()

        assert result["status"] == "ok"
        assert "value-" not in str(result)

    @pytest.mark.asyncio
    async def test_overall_status_degraded(self, credential_store, fake_redis):
        fake_redis.fail = True
        engine = MagicMock()

        status = await HealthChecker(
            credential_store=credential_store,
            engine_factory=lambda: engine,
        ).get_health_status()

        assert status["status"] == "degraded"
        assert status["checks"]["database"]["status"] == "ok"
