"""
Security Test Suite
===================

Tests for:
- SECRET_KEY and CORS validation at startup
- Sliding window rate limiting
- Token issue, verify and revocation
- Security headers
- Rate limiting through the API
- Request screening and application lifecycle

Created: 2025-12-11
Author: jetgause
"""

import importlib
import os
import sys
from datetime import timedelta
from unittest.mock import patch

import pytest
from jose import jwt

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.conftest import TEST_SECRET_KEY, register_user
from taskflow_core.auth import TokenError, TokenErrorKind, TokenService, extract_bearer_token
from taskflow_core.input_validator import detect_harmful_content
from taskflow_core.kv_store import InMemoryKeyValueStore
from taskflow_core.logging_monitoring import audit_logger
from taskflow_core.security import RateLimiter, RateLimiterRegistry


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def restore_config():
    """Reload config with the suite's environment after a test mutates it."""
    yield
    import config
    importlib.reload(config)


# ============================================================================
# CONFIGURATION TESTS
# ============================================================================

@pytest.mark.usefixtures("restore_config")
class TestConfiguration:
    """Test secure configuration requirements"""

    def test_secret_key_required(self):
        """Test that SECRET_KEY is required"""
        env = {k: v for k, v in os.environ.items() if k != "SECRET_KEY"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(SystemExit) as exc_info:
                import config
                importlib.reload(config)
            assert exc_info.value.code == 1

    def test_weak_secret_key_rejected(self):
        """Test that known weak keys are rejected"""
        with patch.dict(os.environ, {"SECRET_KEY": "change-this-in-production"}):
            with pytest.raises(SystemExit) as exc_info:
                import config
                importlib.reload(config)
            assert exc_info.value.code == 1

    def test_short_secret_key_rejected(self):
        """Test that SECRET_KEY must be at least 32 characters"""
        with patch.dict(os.environ, {"SECRET_KEY": "a" * 31}):
            with pytest.raises(SystemExit) as exc_info:
                import config
                importlib.reload(config)
            assert exc_info.value.code == 1

    def test_wildcard_cors_rejected_in_production(self):
        with patch.dict(os.environ, {"ENVIRONMENT": "production", "ALLOWED_ORIGINS": "*"}):
            with pytest.raises(SystemExit):
                import config
                importlib.reload(config)

    def test_valid_configuration_loads(self):
        with patch.dict(os.environ, {"ALLOWED_ORIGINS": "https://a.example, https://b.example"}):
            import config
            importlib.reload(config)
            assert config.SECRET_KEY == TEST_SECRET_KEY
            assert config.ALLOWED_ORIGINS == ["https://a.example", "https://b.example"]
            assert config.EMAIL_ENABLED is False


# ============================================================================
# KEY-VALUE STORE TESTS
# ============================================================================

class TestKeyValueStore:
    """Test the in-memory store behind limiters and revocations"""

    def test_ttl_expiry(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(time_func=clock)
        store.set("a", 1, ttl=10)
        store.set("b", 2)

        clock.advance(10)

        assert store.get("a") is None
        assert "a" not in store
        assert store.get("b") == 2
        assert len(store) == 1

    def test_delete_and_purge(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(time_func=clock)
        store.set("a", 1)
        store.set("b", 2, ttl=1)

        assert store.delete("a") is True
        assert store.delete("a") is False
        clock.advance(2)
        assert store.purge_expired() == 1

    def test_writes_sweep_expired_entries(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(time_func=clock, purge_interval=60)
        for i in range(100):
            store.set(f"k{i}", i, ttl=30)
        store.set("forever", True)

        clock.advance(120)
        store.set("fresh", 1, ttl=30)

        assert store.stored_count() == 2
        assert "forever" in store

    def test_sweep_waits_for_interval(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(time_func=clock, purge_interval=60)
        store.set("a", 1, ttl=1)

        clock.advance(30)
        store.set("b", 2)

        assert store.stored_count() == 2
        assert len(store) == 1

    def test_revocations_do_not_accumulate(self):
        clock = FakeClock()
        tokens = TokenService(TEST_SECRET_KEY, revocations=InMemoryKeyValueStore(time_func=clock))
        for _ in range(50):
            tokens.revoke(tokens.issue("user-1", ttl=timedelta(seconds=60)))
        assert tokens.revocations.stored_count() == 50

        clock.advance(3600)
        tokens.revoke(tokens.issue("user-1"))

        assert tokens.revocations.stored_count() == 1

    def test_rate_limit_windows_do_not_accumulate(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(time_func=clock)
        limiter = RateLimiter(max_requests=5, window=900, store=store, time_func=clock)
        for i in range(1000):
            limiter.check(f"ip:10.0.{i // 256}.{i % 256}")

        clock.advance(10000)
        limiter.check("ip:10.9.9.9")

        assert store.stored_count() == 1


# ============================================================================
# RATE LIMITER TESTS
# ============================================================================

class TestRateLimiter:
    """Test the sliding window limiter"""

    def test_allows_up_to_limit(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=3, window=60, time_func=clock)

        results = [limiter.check("user:1") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]

    def test_retry_after_counts_from_oldest_request(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window=60, time_func=clock)
        limiter.check("ip:1.2.3.4")
        clock.advance(10)
        limiter.check("ip:1.2.3.4")
        clock.advance(5)

        result = limiter.check("ip:1.2.3.4")

        assert result.allowed is False
        assert result.retry_after == 45

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window=60, time_func=clock)
        assert limiter.allow("user:1")
        assert not limiter.allow("user:1")

        clock.advance(60)

        assert limiter.allow("user:1")

    def test_rejected_requests_do_not_extend_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window=10, time_func=clock)
        limiter.check("k")
        for _ in range(5):
            clock.advance(1)
            assert not limiter.allow("k")

        clock.advance(5)
        assert limiter.allow("k")

    def test_identifiers_are_independent(self):
        limiter = RateLimiter(max_requests=1, window=60, time_func=FakeClock())
        assert limiter.allow("user:a")
        assert limiter.allow("user:b")
        assert not limiter.allow("user:a")

    def test_reset_and_remaining(self):
        limiter = RateLimiter(max_requests=3, window=60, time_func=FakeClock())
        limiter.check("user:1")
        limiter.check("user:1")
        assert limiter.get_remaining("user:1") == 1

        limiter.reset("user:1")

        assert limiter.get_remaining("user:1") == 3

    def test_limiters_sharing_a_store_do_not_collide(self):
        store = InMemoryKeyValueStore()
        clock = FakeClock()
        general = RateLimiter(1, 60, store=store, name="general", time_func=clock)
        login = RateLimiter(1, 60, store=store, name="login", time_func=clock)

        assert general.allow("ip:1")
        assert login.allow("ip:1")

    def test_registry_from_settings(self):
        registry = RateLimiterRegistry.from_settings(window=900, general=100, login=5, create=30, create_window=300)

        assert "general" in registry
        assert registry["login"].max_requests == 5
        assert registry.get("create").window == 300
        assert "missing" not in registry


# ============================================================================
# TOKEN SERVICE TESTS
# ============================================================================

class TestTokenService:
    """Test session token handling"""

    def test_issue_and_verify(self, token_service):
        token = token_service.issue("user-1")
        claims = token_service.verify(token)

        assert claims.identity_id == "user-1"
        assert claims.expires_at > claims.issued_at
        assert claims.token_id

    def test_tokens_are_unique(self, token_service):
        assert token_service.issue("user-1") != token_service.issue("user-1")

    def test_expired_token(self, token_service):
        token = token_service.issue("user-1", ttl=timedelta(seconds=-5))

        with pytest.raises(TokenError) as exc_info:
            token_service.verify(token)

        assert exc_info.value.kind == TokenErrorKind.EXPIRED
        assert exc_info.value.message == "Token has expired. Please login again"

    def test_tampered_token(self, token_service):
        token = token_service.issue("user-1")
        forged = jwt.encode({"sub": "user-2", "exp": 9999999999}, "x" * 40, algorithm="HS256")

        for bad in (token[:-4] + "abcd", forged, "not-a-token"):
            with pytest.raises(TokenError) as exc_info:
                token_service.verify(bad)
            assert exc_info.value.kind == TokenErrorKind.MALFORMED

    def test_token_without_subject_is_malformed(self, token_service):
        token = jwt.encode({"exp": 9999999999}, TEST_SECRET_KEY, algorithm="HS256")

        with pytest.raises(TokenError) as exc_info:
            token_service.verify(token)

        assert exc_info.value.kind == TokenErrorKind.MALFORMED

    def test_revoked_token(self, token_service):
        token = token_service.issue("user-1")
        other = token_service.issue("user-1")

        token_service.revoke(token)

        assert token_service.is_revoked(token)
        with pytest.raises(TokenError) as exc_info:
            token_service.verify(token)
        assert exc_info.value.kind == TokenErrorKind.REVOKED
        assert token_service.verify(other).identity_id == "user-1"

    def test_revoking_expired_or_garbage_token_is_noop(self, token_service):
        expired = token_service.issue("user-1", ttl=timedelta(seconds=-5))
        token_service.revoke(expired)
        token_service.revoke("garbage")

        assert len(token_service.revocations) == 0

    def test_other_secret_rejects(self):
        issuer = TokenService("a" * 40)
        verifier = TokenService("b" * 40)

        with pytest.raises(TokenError):
            verifier.verify(issuer.issue("user-1"))

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None


# ============================================================================
# HTTP SECURITY TESTS
# ============================================================================

class TestSecurityHeaders:
    """Test security headers on responses"""

    def test_headers_present(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-API-Version"] == "1.0.0"
        assert "X-Response-Time" in response.headers

    def test_headers_on_errors(self, client):
        response = client.get("/api/tasks")

        assert response.status_code == 401
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_health_reports_database(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["security"]["checks"]["secret_key_configured"] is True


class TestRateLimitingEndpoints:
    """Test limits applied through the API"""

    @pytest.fixture
    def tight_limiters(self):
        return RateLimiterRegistry.from_settings(general=3, auth=10, login=2, create=10)

    @pytest.fixture
    def client(self, db, dispatcher, token_service, tight_limiters, password_manager):
        from fastapi.testclient import TestClient
        from api_server import create_app

        app = create_app(
            db_manager=db,
            dispatcher=dispatcher,
            token_service=token_service,
            limiters=tight_limiters,
            password_manager=password_manager,
        )
        return TestClient(app)

    def test_login_limit_returns_429(self, client):
        register_user(client)
        body = {"email": "alice@example.com", "password": "Wrong$Pass1"}

        statuses = [client.post("/api/auth/login", json=body).status_code for _ in range(3)]

        assert statuses == [401, 401, 429]

    def test_429_envelope(self, client):
        body = {"email": "nobody@example.com", "password": "Wrong$Pass1"}
        for _ in range(2):
            client.post("/api/auth/login", json=body)

        response = client.post("/api/auth/login", json=body)

        assert response.status_code == 429
        payload = response.json()
        assert payload["success"] is False
        assert payload["retryAfter"] >= 1
        assert response.headers["Retry-After"] == str(payload["retryAfter"])

    def test_general_limit_keyed_by_user(self, client):
        alice = register_user(client)
        bob = register_user(client, name="Bob Jones", email="bob@example.com")

        alice_statuses = [client.get("/api/tasks", headers=alice["headers"]).status_code for _ in range(4)]
        bob_response = client.get("/api/tasks", headers=bob["headers"])

        assert alice_statuses == [200, 200, 200, 429]
        assert bob_response.status_code == 200

    def test_unauthenticated_requests_rejected_before_limit(self, client):
        statuses = [client.get("/api/tasks").status_code for _ in range(5)]

        assert statuses == [401] * 5


class TestRequestScreening:
    """Test content type and injection checks on incoming requests"""

    def test_body_must_be_json(self, client):
        response = client.post(
            "/api/auth/login",
            content="email=alice@example.com&password=x",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Content-Type must be application/json"

    def test_bodyless_post_accepted(self, client, alice):
        response = client.post("/api/auth/logout", headers=alice["headers"])

        assert response.status_code == 200

    @pytest.mark.parametrize("payload", [
        {"title": "<script>alert(1)</script>"},
        {"title": "Plan", "description": "${process.env.SECRET_KEY}"},
        {"title": "Plan", "tags": ["ok", "x UNION SELECT password FROM users"]},
        {"title": "Link", "description": "javascript:void(0)"},
    ])
    def test_harmful_body_rejected(self, client, alice, payload):
        response = client.post("/api/tasks", headers=alice["headers"], json=payload)

        assert response.status_code == 400
        assert response.json()["message"] == "Request contains potentially harmful content"
        assert client.get("/api/tasks", headers=alice["headers"]).json()["data"]["tasks"] == []

    def test_harmful_query_rejected(self, client, alice):
        response = client.get("/api/tasks", headers=alice["headers"], params={"search": "1; DROP TABLE tasks"})

        assert response.status_code == 400
        assert response.json()["message"] == "Request contains potentially harmful content"

    def test_rejection_is_audited(self, client):
        client.post("/api/auth/login", json={"email": "a@example.com", "password": "<script>x</script>"})

        event = audit_logger.get_recent_events(1)[0]
        assert event.category == "security"
        assert event.action == "harmful_content_rejected"
        assert event.details["path"] == "/api/auth/login"

    def test_plain_content_passes(self, client, alice):
        response = client.post("/api/tasks", headers=alice["headers"], json={
            "title": "Select a venue",
            "description": "Table for four, drop off the cake",
        })

        assert response.status_code == 201

    def test_detect_harmful_content(self):
        assert detect_harmful_content({"a": {"b": ["fine", "<SCRIPT>x</SCRIPT>"]}})
        assert detect_harmful_content(["img onerror=alert(1)"])
        assert not detect_harmful_content({"title": "Weekly review", "count": 3, "done": None})
        assert not detect_harmful_content(None)


class TestApplicationLifecycle:
    """Test that the app only connects once it starts"""

    def test_database_initialized_by_lifespan(self):
        from fastapi.testclient import TestClient
        from api_server import create_app

        app = create_app()
        assert app.state.db.initialized is False

        with TestClient(app) as client:
            assert app.state.db.initialized is True
            assert client.get("/health").json()["database"] == "connected"

    def test_importing_server_builds_nothing(self):
        import api_server

        assert not hasattr(api_server, "app")
