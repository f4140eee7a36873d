"""
FastAPI application factory.

Wires shared services onto app.state:
- auth_config, session_manager
- credential_store (Redis)
- oidc_client, refresh_service and coordinator_registry (when the
  identity provider is configured)

Run with:
    uvicorn docchat.main:build_default_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from docchat.api.routes import auth, companies, health, me, settings
from docchat.auth.coordinator import CoordinatorRegistry
from docchat.auth.refresh import TokenRefreshService
from docchat.auth.session import SessionManager
from docchat.auth.token_store import CredentialStore, get_credential_store
from docchat.config.auth import AuthConfig, get_auth_config
from docchat.platform.errors import ErrorHandlerMiddleware
from docchat.platform.health import get_health_checker
from docchat.platform.oidc_client import OIDCClient, get_oidc_client
from docchat.platform.redaction import setup_secret_logging
from docchat.utils.encryption import validate_encryption_configured

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    setup_secret_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not validate_encryption_configured():
        logger.error("SERVER_KEY is not configured; brand secrets cannot be stored")
    yield
    registry = app.state.coordinator_registry
    if registry is not None:
        await registry.shutdown()


def create_app(
    auth_config: Optional[AuthConfig] = None,
    credential_store: Optional[CredentialStore] = None,
    session_manager: Optional[SessionManager] = None,
    oidc_client: Optional[OIDCClient] = None,
) -> FastAPI:
    """
    Build the API application.

    Any service not passed in is created from the environment.
    """
    app = FastAPI(title="Document Chat API", lifespan=lifespan)
    app.add_middleware(ErrorHandlerMiddleware)

    config = auth_config or get_auth_config()
    store = credential_store or get_credential_store()
    oidc = oidc_client or get_oidc_client()

    app.state.auth_config = config
    app.state.credential_store = store
    app.state.session_manager = session_manager or SessionManager.from_config(config)
    app.state.oidc_client = oidc
    app.state.refresh_service = None
    app.state.coordinator_registry = None

    if oidc is not None:
        refresh_service = TokenRefreshService(
            store,
            oidc,
            refresh_threshold_seconds=config.refresh_threshold_seconds,
        )
        app.state.refresh_service = refresh_service
        app.state.coordinator_registry = CoordinatorRegistry(refresh_service, config=config)
    else:
        logger.warning("Identity provider not configured; login and refresh are disabled")

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(me.router)
    app.include_router(settings.router)
    app.include_router(companies.router)

    return app


def build_default_app() -> FastAPI:
    configure_logging()
    get_health_checker(get_credential_store()).log_config_status()
    return create_app()
