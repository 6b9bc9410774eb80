"""
FastAPI dependencies resolving the components one application instance owns.

``create_app`` stores them on ``app.state``; routers only ever reach them
through these functions so tests can build isolated apps side by side.
"""

from fastapi import Depends, Request

from taskflow_core.auth import PasswordManager, TokenService, get_auth_context
from taskflow_core.database import DatabaseManager
from taskflow_core.notifications import NotificationDispatcher
from taskflow_core.security import rate_limit_dependency


def get_db(request: Request) -> DatabaseManager:
    return request.app.state.db


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_password_manager(request: Request) -> PasswordManager:
    return request.app.state.password_manager


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


# Protected routers: resolve the caller first so limits are keyed by identity
PROTECTED = [Depends(get_auth_context), Depends(rate_limit_dependency("general"))]
