"""ASGI application wiring.

Run with: uvicorn app:create_app --factory
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.notifications import NotificationSender
from auth.password_reset import PasswordResetManager
from auth.passwords import PasswordHasher
from auth.rate_limiter import RateLimiter
from auth.roles import RoleResolver
from auth.security_logger import SecurityLogger
from auth.security_middleware import AuthMiddleware
from auth.service import AuthService
from auth.session import SessionTokenIssuer
from auth.trusted_devices import TrustedDeviceManager
from auth.two_factor import TwoFactorManager
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import get_database_url, get_email_config, get_jwt_secret, get_valkey_url

logger = logging.getLogger(__name__)


def build_auth_service(
    config: AuthConfig,
    postgres: PostgresClient,
    valkey: ValkeyClient,
    email_client: EmailGatewayClient,
    token_issuer: SessionTokenIssuer,
) -> AuthService:
    """Assemble AuthService from its infrastructure clients."""
    auth_db = AuthDatabase(postgres)
    hasher = PasswordHasher(rounds=config.bcrypt_rounds)

    return AuthService(
        config=config,
        auth_db=auth_db,
        hasher=hasher,
        login_limiter=RateLimiter.for_login(valkey, config),
        reset_limiter=RateLimiter.for_password_reset(valkey, config),
        two_factor=TwoFactorManager(auth_db, config),
        trusted_devices=TrustedDeviceManager(auth_db, config),
        role_resolver=RoleResolver(auth_db),
        token_issuer=token_issuer,
        password_reset=PasswordResetManager(auth_db, hasher, config),
        notifications=NotificationSender(email_client, config),
        security_logger=SecurityLogger(postgres),
    )


def create_app(config: AuthConfig | None = None) -> FastAPI:
    """Create the FastAPI app. Secrets come from Vault; fails fast if any is missing."""
    load_dotenv(Path(__file__).parent / ".env")
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    if config is None:
        config = AuthConfig(
            environment=os.getenv("APP_ENV", "production"),
            app_base_url=os.getenv("APP_BASE_URL", AuthConfig.model_fields["app_base_url"].default),
        )

    postgres = PostgresClient(get_database_url())
    valkey = ValkeyClient(get_valkey_url())
    email_client = EmailGatewayClient(**get_email_config())
    token_issuer = SessionTokenIssuer(get_jwt_secret(), config)

    auth_service = build_auth_service(config, postgres, valkey, email_client, token_issuer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        postgres.close()
        valkey.close()
        logger.info("Infrastructure clients closed")

    app = FastAPI(title=config.app_name, lifespan=lifespan)
    # Last added runs first: request ids are assigned before auth can reject
    app.add_middleware(AuthMiddleware, token_issuer=token_issuer)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)
    app.include_router(create_auth_router(auth_service), prefix="/auth")

    @app.get("/health")
    def health():
        valkey.ping()
        return {"status": "ok"}

    logger.info(f"Application created ({config.environment})")
    return app
