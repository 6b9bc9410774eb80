"""
Logging and Monitoring
======================

Structured logging for the TaskFlow API.

Features:
- JSON log formatter for file output
- Rotating file handlers
- Audit trail of authentication and authorization events
- Request timing middleware

Author: jetgause
Created: 2025-12-11
"""

import json
import logging
import logging.handlers
import sys
import threading
import time
import traceback
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_configured = False
_configure_lock = threading.Lock()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventCategory(Enum):
    """Audit event categories."""
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    ACCOUNT = "account"
    NOTIFICATION = "notification"
    SECURITY = "security"


@dataclass
class LogEntry:
    """Structured log entry."""
    timestamp: str
    level: str
    message: str
    logger_name: str
    module: str
    function: str
    line_number: int
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


@dataclass
class AuditEvent:
    """Audit trail event."""
    timestamp: str
    category: str
    action: str
    status: str
    user_id: Optional[str] = None
    user_ip: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class JSONFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = LogEntry(
            timestamp=_now_iso(),
            level=record.levelname,
            message=record.getMessage(),
            logger_name=record.name,
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            extra=dict(getattr(record, 'extra', {}) or {}),
        )

        if record.exc_info:
            log_entry.extra['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return log_entry.to_json()


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, json_format: bool = False) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Log level name
        log_file: Optional path for a rotating log file
        json_format: Use JSON lines on the console as well
    """
    global _configured
    with _configure_lock:
        if _configured:
            return

        root = logging.getLogger()
        root.setLevel(level.upper())

        console_handler = logging.StreamHandler(sys.stdout)
        if json_format:
            console_handler.setFormatter(JSONFormatter())
        else:
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
        root.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=5
            )
            file_handler.setFormatter(JSONFormatter())
            root.addHandler(file_handler)

        _configured = True


class AuditLogger:
    """Audit trail logging."""

    def __init__(self, max_recent: int = 1000):
        self.logger = logging.getLogger("taskflow.audit")
        self.recent_events: deque = deque(maxlen=max_recent)
        self._lock = threading.Lock()

    def log_event(
        self,
        category: EventCategory,
        action: str,
        status: str,
        user_id: Optional[str] = None,
        user_ip: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **details
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=_now_iso(),
            category=category.value,
            action=action,
            status=status,
            user_id=user_id,
            user_ip=user_ip,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        )

        if status == "failure":
            self.logger.warning(event.to_json())
        else:
            self.logger.info(event.to_json())

        with self._lock:
            self.recent_events.append(event)
        return event

    def log_authentication(self, action: str, success: bool, user_id: Optional[str] = None,
                           user_ip: Optional[str] = None, **details) -> AuditEvent:
        return self.log_event(
            EventCategory.AUTHENTICATION, action, "success" if success else "failure",
            user_id=user_id, user_ip=user_ip, **details
        )

    def get_recent_events(self, limit: int = 100) -> List[AuditEvent]:
        with self._lock:
            return list(self.recent_events)[-limit:]


audit_logger = AuditLogger()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log one line per request and expose its duration."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        client = request.client.host if request.client else "-"
        logger.info(
            f"{request.method} {request.url.path} {response.status_code} "
            f"{client} {duration_ms:.2f}ms"
        )
        return response
