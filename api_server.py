"""
TaskFlow - FastAPI Server
Multi-tenant task management API with token auth, rate limiting and email notifications
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

import config
from taskflow_core import auth_api, tag_api, task_api
from taskflow_core.auth import AuthContext, AuthorizationGate, PasswordManager, TokenService, get_auth_context
from taskflow_core.database import DatabaseConfig, DatabaseManager
from taskflow_core.dependencies import PROTECTED, get_dispatcher
from taskflow_core.errors import register_exception_handlers, success_response
from taskflow_core.kv_store import InMemoryKeyValueStore
from taskflow_core.logging_monitoring import RequestLoggingMiddleware, setup_logging
from taskflow_core.notifications import EmailConfig, EmailService, NotificationDispatcher
from taskflow_core.security import RateLimiterRegistry, SecurityHeadersMiddleware, validate_request

# Setup logging
setup_logging(config.LOG_LEVEL, config.LOG_FILE or None, config.LOG_JSON)
logger = logging.getLogger(__name__)

API_NAME = "TaskFlow API"


def build_database() -> DatabaseManager:
    return DatabaseManager(DatabaseConfig(config.DATABASE_URL, echo=config.DATABASE_ECHO))


def build_token_service() -> TokenService:
    return TokenService(
        config.SECRET_KEY,
        algorithm=config.JWT_ALGORITHM,
        default_ttl=timedelta(minutes=config.JWT_EXPIRE_MINUTES),
        revocations=InMemoryKeyValueStore(),
    )


def build_rate_limiters() -> RateLimiterRegistry:
    return RateLimiterRegistry.from_settings(
        window=config.RATE_LIMIT_WINDOW_SECONDS,
        general=config.GENERAL_RATE_LIMIT,
        auth=config.AUTH_RATE_LIMIT,
        login=config.LOGIN_RATE_LIMIT,
        create=config.CREATE_RATE_LIMIT,
        create_window=config.CREATE_RATE_LIMIT_WINDOW_SECONDS,
    )


def build_dispatcher(db: DatabaseManager) -> NotificationDispatcher:
    email_service = EmailService(EmailConfig(
        smtp_host=config.EMAIL_HOST,
        smtp_port=config.EMAIL_PORT,
        smtp_username=config.EMAIL_USER,
        smtp_password=config.EMAIL_PASS,
        email_from=config.EMAIL_FROM,
        client_url=config.CLIENT_URL,
    ))
    return NotificationDispatcher(
        db,
        email_service,
        lead=timedelta(hours=config.REMINDER_LEAD_HOURS),
        horizon=timedelta(days=config.REMINDER_HORIZON_DAYS),
        scan_interval=timedelta(hours=config.OVERDUE_SCAN_INTERVAL_HOURS),
        enabled=config.NOTIFICATIONS_ENABLED,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.db.initialize()
    app.state.dispatcher.start()
    logger.info(f"{API_NAME} {config.API_VERSION} started ({config.ENVIRONMENT})")
    try:
        yield
    finally:
        app.state.dispatcher.stop()
        app.state.db.close()
        logger.info(f"{API_NAME} stopped")


def create_app(
    db_manager: Optional[DatabaseManager] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    token_service: Optional[TokenService] = None,
    limiters: Optional[RateLimiterRegistry] = None,
    password_manager: Optional[PasswordManager] = None,
) -> FastAPI:
    """
    Build an application instance.

    Every collaborator can be injected; anything omitted is built from
    ``config``. Nothing connects until the lifespan starts; callers that
    skip the lifespan (a bare TestClient) pass an initialized db_manager.
    """
    db = db_manager or build_database()
    tokens = token_service or build_token_service()

    app = FastAPI(
        title=API_NAME,
        description="Multi-tenant task management API",
        version=config.API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        dependencies=[Depends(validate_request)],
    )

    app.state.db = db
    app.state.token_service = tokens
    app.state.password_manager = password_manager or PasswordManager(rounds=config.BCRYPT_ROUNDS)
    app.state.rate_limiters = limiters or build_rate_limiters()
    app.state.dispatcher = dispatcher or build_dispatcher(db)
    app.state.gate = AuthorizationGate(tokens, db)

    register_exception_handlers(app)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, api_version=config.API_VERSION)
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    notifications = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=PROTECTED)

    @notifications.get("/stats")
    def notification_stats(request: Request, auth: AuthContext = Depends(get_auth_context)):
        stats = get_dispatcher(request).get_notification_stats(auth.user.id)
        return success_response({"stats": stats}, "Notification statistics retrieved successfully")

    for router in (auth_api.router, task_api.router, tag_api.router, notifications):
        app.include_router(router, prefix="/api")

    @app.get("/health")
    def health_check(request: Request):
        """Health check with database and security status."""
        try:
            with request.app.state.db.get_session() as session:
                session.execute(text("SELECT 1"))
            database_ok = True
        except Exception as e:
            logger.error(f"Health check database query failed: {e}")
            database_ok = False

        security_checks = {
            "secret_key_configured": len(config.SECRET_KEY) >= 32,
            "cors_secure": "*" not in config.ALLOWED_ORIGINS,
            "email_configured": config.EMAIL_ENABLED,
        }

        return {
            "status": "healthy" if database_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": config.API_VERSION,
            "environment": config.ENVIRONMENT,
            "database": "connected" if database_ok else "unavailable",
            "security": {
                "status": "secure" if all(security_checks.values()) else "warnings",
                "checks": security_checks,
            },
        }

    @app.get("/")
    def root():
        """Root endpoint"""
        return {
            "name": API_NAME,
            "version": config.API_VERSION,
            "status": "operational",
            "docs": "/docs",
        }

    @app.get("/api")
    def api_index():
        return {
            "success": True,
            "message": f"{API_NAME} {config.API_VERSION}",
            "endpoints": {
                "auth": "/api/auth",
                "tasks": "/api/tasks",
                "tags": "/api/tags",
                "notifications": "/api/notifications/stats",
                "health": "/health",
                "docs": "/docs",
            },
        }

    return app


if __name__ == "__main__":
    uvicorn.run(
        "api_server:create_app",
        factory=True,
        host=config.API_HOST,
        port=config.API_PORT,
        workers=config.API_WORKERS,
        reload=False,
        log_level=config.LOG_LEVEL.lower()
    )
