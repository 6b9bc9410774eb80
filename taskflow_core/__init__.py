"""
TaskFlow Core Module
====================

Auth, rate limiting, owner-scoped storage and notifications for the
TaskFlow task management API.

Author: jetgause
Version: 1.0.0
"""

__version__ = "1.0.0"
__all__ = [
    "DatabaseManager",
    "DatabaseConfig",
    "TokenService",
    "AuthorizationGate",
    "RateLimiter",
    "NotificationDispatcher",
]

from taskflow_core.database import DatabaseConfig, DatabaseManager
from taskflow_core.auth import AuthorizationGate, TokenService
from taskflow_core.security import RateLimiter
from taskflow_core.notifications import NotificationDispatcher
