"""FastAPI application initialization."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authledger.api.audit import router as audit_router
from authledger.api.auth import router as auth_router
from authledger.api.errors import register_exception_handlers
from authledger.api.health import router as health_router
from authledger.api.middleware import AuditMiddleware, CorrelationIdMiddleware
from authledger.config import Settings, get_settings
from authledger.database import close_database, init_database, run_migrations
from authledger.repositories.base import AuditLogRepository, UserRepository
from authledger.repositories.memory import InMemoryAuditLogRepository, InMemoryUserRepository
from authledger.repositories.postgres import PostgresAuditLogRepository, PostgresUserRepository
from authledger.services.audit_log_service import AuditLogService
from authledger.services.audit_recorder import AuditDispatcher, AuditRecorder
from authledger.services.audit_rules import AuditRules
from authledger.services.auth_service import AuthService
from authledger.services.background import await_pending_tasks
from authledger.services.credential_service import CredentialService
from authledger.services.email_service import EmailService
from authledger.services.identity_service import IdentityVerifier
from authledger.services.logging_service import configure_logging, get_logger
from authledger.services.token_service import TokenService


async def _audit_retention_loop(audit_log_service: AuditLogService, interval_seconds: float) -> None:
    """Periodically delete audit entries past the retention horizon."""
    logger = get_logger("audit_retention")
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await audit_log_service.cleanup()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning("audit_retention_cycle_error", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    settings: Settings = app.state.settings
    configure_logging(settings.log_level, json_logs=settings.environment != "development")
    logger = get_logger("main")

    if settings.storage_backend == "postgres":
        try:
            await init_database(
                settings.postgres_url,
                min_size=settings.postgres_pool_min_size,
                max_size=settings.postgres_pool_max_size,
            )
            applied = await run_migrations()
            logger.info("database_initialized", migrations_applied=applied)
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    retention_task = asyncio.create_task(
        _audit_retention_loop(
            app.state.audit_log_service,
            settings.audit_cleanup_interval_hours * 3600,
        )
    )
    logger.info("audit_retention_started", retention_days=settings.audit_retention_days)

    logger.info(
        "application_started",
        environment=settings.environment,
        storage_backend=settings.storage_backend,
        log_level=settings.log_level,
    )

    yield

    # Shutdown
    retention_task.cancel()
    try:
        await retention_task
    except asyncio.CancelledError:
        pass

    # Drain side tasks first: they may still enqueue audit entries
    await await_pending_tasks(timeout=5.0)
    await app.state.audit_dispatcher.stop(timeout=5.0)
    logger.info("audit_dispatcher_stopped", dropped=app.state.audit_dispatcher.dropped)

    if settings.storage_backend == "postgres":
        await close_database()

    logger.info("application_shutdown")


def create_app(
    settings: Optional[Settings] = None,
    *,
    user_repository: Optional[UserRepository] = None,
    audit_repository: Optional[AuditLogRepository] = None,
    identity_verifier: Optional[IdentityVerifier] = None,
    email_service: Optional[EmailService] = None,
) -> FastAPI:
    """Build the application and wire every component from one Settings object.

    Collaborators can be injected; anything omitted is built from ``settings``.
    """
    settings = settings or get_settings()

    if user_repository is None or audit_repository is None:
        if settings.storage_backend == "memory":
            user_repository = user_repository or InMemoryUserRepository()
            audit_repository = audit_repository or InMemoryAuditLogRepository()
        else:
            user_repository = user_repository or PostgresUserRepository()
            audit_repository = audit_repository or PostgresAuditLogRepository()

    audit_log_service = AuditLogService(settings, audit_repository, user_repository)
    dispatcher = AuditDispatcher(audit_log_service, max_size=settings.audit_queue_max_size)
    recorder = AuditRecorder(dispatcher)
    credentials = CredentialService(settings, user_repository)
    tokens = TokenService(settings)
    auth_service = AuthService(
        settings=settings,
        users=user_repository,
        credentials=credentials,
        tokens=tokens,
        identity=identity_verifier or IdentityVerifier(settings),
        email=email_service or EmailService(settings),
        recorder=recorder,
    )

    app = FastAPI(
        title=settings.app_name,
        description="User authentication with lockout, token sessions and an audit trail",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.user_repository = user_repository
    app.state.audit_repository = audit_repository
    app.state.audit_log_service = audit_log_service
    app.state.audit_dispatcher = dispatcher
    app.state.audit_recorder = recorder
    app.state.token_service = tokens
    app.state.auth_service = auth_service

    register_exception_handlers(app)

    # Innermost: runs with the correlation id already bound
    app.add_middleware(
        AuditMiddleware,
        recorder=recorder,
        rules=AuditRules.from_settings(settings),
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origin.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(audit_router)

    return app


app = create_app()
