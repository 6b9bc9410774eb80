"""
Request Security
================

Features:
- Sliding-window rate limiting keyed by identity or client address
- Named limiter registry (general, auth, login, create)
- FastAPI dependency that turns a denial into HTTP 429
- Request screening: JSON content type and injection markers
- Security response headers middleware

Created: 2025-12-10
Author: jetgause
"""

import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from taskflow_core.errors import RateLimited, ValidationFailure
from taskflow_core.input_validator import detect_harmful_content
from taskflow_core.kv_store import InMemoryKeyValueStore, KeyValueStore
from taskflow_core.logging_monitoring import EventCategory, audit_logger

logger = logging.getLogger(__name__)


# ============================================================================
# SECURITY CONFIGURATION
# ============================================================================

class SecurityConfig:
    """Security configuration settings"""

    RATE_LIMIT_MAX_REQUESTS = 100
    RATE_LIMIT_WINDOW = 900  # 15 minutes

    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Content-Security-Policy': "default-src 'self'",
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'geolocation=(), microphone=(), camera=()'
    }


# ============================================================================
# RATE LIMITING
# ============================================================================

@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """
    Sliding-window rate limiter.

    Each identifier keeps the timestamps of its accepted requests inside the
    window. A request is accepted while fewer than ``max_requests`` remain.
    """

    def __init__(
        self,
        max_requests: int = SecurityConfig.RATE_LIMIT_MAX_REQUESTS,
        window: int = SecurityConfig.RATE_LIMIT_WINDOW,
        store: Optional[KeyValueStore] = None,
        name: str = "default",
        time_func: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window = window
        self.name = name
        self.store = store if store is not None else InMemoryKeyValueStore()
        self._time = time_func
        self._lock = threading.Lock()

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.name}:{identifier}"

    def _recent(self, identifier: str, now: float) -> List[float]:
        return [
            req_time for req_time in self.store.get(self._key(identifier), [])
            if now - req_time < self.window
        ]

    def check(self, identifier: str) -> RateLimitResult:
        """Record a request for identifier if it fits in the window."""
        with self._lock:
            current_time = self._time()
            requests = self._recent(identifier, current_time)

            if len(requests) >= self.max_requests:
                self.store.set(self._key(identifier), requests, ttl=self.window)
                retry_after = max(1, math.ceil(requests[0] + self.window - current_time))
                return RateLimitResult(False, 0, retry_after)

            requests.append(current_time)
            self.store.set(self._key(identifier), requests, ttl=self.window)
            return RateLimitResult(True, self.max_requests - len(requests))

    def allow(self, identifier: str) -> bool:
        return self.check(identifier).allowed

    def reset(self, identifier: str):
        """Reset rate limit for identifier"""
        self.store.delete(self._key(identifier))

    def get_remaining(self, identifier: str) -> int:
        """Get remaining requests for identifier"""
        return max(0, self.max_requests - len(self._recent(identifier, self._time())))


class RateLimiterRegistry:
    """The named limiters one application instance uses."""

    def __init__(self, limiters: Optional[Dict[str, RateLimiter]] = None):
        self._limiters: Dict[str, RateLimiter] = dict(limiters or {})

    @classmethod
    def from_settings(
        cls,
        window: int = 900,
        general: int = 100,
        auth: int = 10,
        login: int = 5,
        create: int = 30,
        create_window: int = 300,
        time_func: Callable[[], float] = time.time,
    ) -> "RateLimiterRegistry":
        return cls({
            "general": RateLimiter(general, window, name="general", time_func=time_func),
            "auth": RateLimiter(auth, window, name="auth", time_func=time_func),
            "login": RateLimiter(login, window, name="login", time_func=time_func),
            "create": RateLimiter(create, create_window, name="create", time_func=time_func),
        })

    def get(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __getitem__(self, name: str) -> RateLimiter:
        return self.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._limiters


def request_identifier(request: Request) -> str:
    """``user:<id>`` once the gate has run, else ``ip:<address>``."""
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limit_dependency(limiter: Union[RateLimiter, str]) -> Callable[[Request], None]:
    """
    Build a FastAPI dependency for limiter.

    A string names a limiter in the application's registry
    (``app.state.rate_limiters``), so each app instance keeps its own windows.
    """

    def dependency(request: Request) -> None:
        active = limiter
        if isinstance(active, str):
            active = request.app.state.rate_limiters.get(active)

        identifier = request_identifier(request)
        result = active.check(identifier)
        if not result.allowed:
            audit_logger.log_event(
                EventCategory.RATE_LIMIT, "rate_limit_exceeded", "failure",
                user_ip=identifier, limiter=active.name, limit=active.max_requests,
            )
            raise RateLimited(result.retry_after)

    return dependency


# ============================================================================
# REQUEST SCREENING
# ============================================================================

JSON_BODY_METHODS = ("POST", "PUT", "PATCH")


async def validate_request(request: Request) -> None:
    """
    Reject requests before any handler sees them.

    A POST, PUT or PATCH that carries a body must declare
    ``application/json``. The decoded body and every query value are then
    screened for injection markers.

    Raises:
        ValidationFailure: on a wrong content type or harmful content
    """
    body = await request.body()
    payload = None
    if body:
        content_type = request.headers.get("content-type", "")
        if request.method in JSON_BODY_METHODS and "application/json" not in content_type:
            raise ValidationFailure("Content-Type must be application/json")
        try:
            payload = json.loads(body)
        except ValueError:
            # Undecodable bodies are rejected by schema validation
            payload = None

    query_values = [value for _, value in request.query_params.multi_items()]
    if detect_harmful_content(payload) or detect_harmful_content(query_values):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Suspicious request detected from IP: {client}")
        audit_logger.log_event(
            EventCategory.SECURITY, "harmful_content_rejected", "failure",
            user_ip=client, method=request.method, path=request.url.path,
        )
        raise ValidationFailure("Request contains potentially harmful content")


# ============================================================================
# SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add the standard security headers to every response."""

    def __init__(self, app, api_version: str = "1.0.0"):
        super().__init__(app)
        self.api_version = api_version

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in SecurityConfig.SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        response.headers["X-API-Version"] = self.api_version
        return response
