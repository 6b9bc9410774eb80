"""
Authentication Test Suite
=========================

Tests for:
- The authorization gate and its rejection messages
- Registration, login and logout
- Profile and password changes
- Forgot / reset password flow

Created: 2025-12-11
Author: jetgause
"""

import os
import re
import sys
import uuid
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.conftest import STRONG_PASSWORD, InlineExecutor, register_user
from api_server import create_app
from taskflow_core.auth import PasswordManager
from taskflow_core.database import User
from taskflow_core.logging_monitoring import audit_logger
from taskflow_core.notifications import EmailConfig, EmailService, NotificationDispatcher

RESET_LINK = re.compile(r"reset-password\?token=([0-9a-f]{64})")


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# PASSWORD MANAGER TESTS
# ============================================================================

class TestPasswordManager:
    """Test password hashing and strength rules"""

    def test_hash_and_verify(self, password_manager):
        hashed = password_manager.hash_password(STRONG_PASSWORD)

        assert hashed != STRONG_PASSWORD
        assert password_manager.verify_password(STRONG_PASSWORD, hashed)
        assert not password_manager.verify_password("Wrong$Pass1", hashed)

    def test_invalid_hash_does_not_verify(self, password_manager):
        assert password_manager.verify_password(STRONG_PASSWORD, "not-a-bcrypt-hash") is False

    def test_long_passwords_are_accepted(self, password_manager):
        long_password = "Aa1$" + "x" * 100
        hashed = password_manager.hash_password(long_password)
        assert password_manager.verify_password(long_password, hashed)

    def test_strength_rules(self):
        is_valid, errors = PasswordManager.validate_password_strength("short")
        assert not is_valid
        assert "Password must be at least 8 characters long" in errors
        assert "Password must contain at least one uppercase letter" in errors
        assert "Password must contain at least one digit" in errors

        assert PasswordManager.validate_password_strength(STRONG_PASSWORD) == (True, [])


# ============================================================================
# AUTHORIZATION GATE TESTS
# ============================================================================

class TestAuthorizationGate:
    """Test identity resolution on protected routes"""

    def test_missing_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["message"] == "Access denied. No token provided"

    def test_non_bearer_header(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401
        assert response.json()["message"] == "Access denied. No token provided"

    def test_malformed_token(self, client):
        response = client.get("/api/auth/me", headers=bearer("abc.def.ghi"))

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token format"

    def test_expired_token(self, client, token_service, alice):
        token = token_service.issue(alice["id"], ttl=timedelta(seconds=-1))

        response = client.get("/api/auth/me", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["message"] == "Token has expired. Please login again"

    def test_unknown_identity(self, client, token_service):
        token = token_service.issue(str(uuid.uuid4()))

        response = client.get("/api/tasks", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["message"] == "Token is valid but user no longer exists"

    def test_valid_token_updates_activity(self, client, db, alice):
        response = client.get("/api/auth/me", headers=alice["headers"])

        assert response.status_code == 200
        with db.get_session() as session:
            assert session.get(User, alice["id"]).last_activity is not None


# ============================================================================
# REGISTRATION AND LOGIN TESTS
# ============================================================================

class TestRegistration:
    """Test account creation"""

    def test_register_returns_user_and_token(self, client, email_service):
        response = client.post("/api/auth/register", json={
            "name": "Alice Smith",
            "email": "Alice@Example.com",
            "password": STRONG_PASSWORD,
        })

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "User registered successfully"
        assert body["data"]["user"]["email"] == "alice@example.com"
        assert "password" not in body["data"]["user"]
        assert "passwordHash" not in body["data"]["user"]
        assert body["data"]["token"]
        assert ("alice@example.com", "Welcome to Task Manager!") in email_service.sent

    def test_duplicate_email_is_case_insensitive(self, client, alice):
        response = client.post("/api/auth/register", json={
            "name": "Other Alice",
            "email": "ALICE@example.com",
            "password": STRONG_PASSWORD,
        })

        assert response.status_code == 400
        assert response.json()["message"] == "User already exists with that email"

    def test_weak_password_rejected(self, client):
        response = client.post("/api/auth/register", json={
            "name": "Alice Smith",
            "email": "alice@example.com",
            "password": "password",
        })

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert any("uppercase" in error for error in body["errors"])

    def test_confirm_password_mismatch(self, client):
        response = client.post("/api/auth/register", json={
            "name": "Alice Smith",
            "email": "alice@example.com",
            "password": STRONG_PASSWORD,
            "confirmPassword": STRONG_PASSWORD + "x",
        })

        assert response.status_code == 400

    def test_invalid_name_rejected(self, client):
        response = client.post("/api/auth/register", json={
            "name": "R2D2",
            "email": "r2@example.com",
            "password": STRONG_PASSWORD,
        })

        assert response.status_code == 400

    def test_welcome_email_failure_does_not_fail_registration(self, client, email_service):
        email_service.fail = True

        response = client.post("/api/auth/register", json={
            "name": "Alice Smith",
            "email": "alice@example.com",
            "password": STRONG_PASSWORD,
        })

        assert response.status_code == 201


class TestLogin:
    """Test login and logout"""

    def test_login_success(self, client, alice):
        response = client.post("/api/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Login successful"
        assert body["data"]["user"]["id"] == alice["id"]
        assert body["data"]["user"]["lastLogin"] is not None

    def test_wrong_password_and_unknown_email_look_the_same(self, client, alice):
        wrong = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Wrong$Pass1"})
        unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "Wrong$Pass1"})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["message"] == unknown.json()["message"] == "Invalid credentials"

    def test_failed_login_is_audited(self, client, alice):
        client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Wrong$Pass1"})

        event = audit_logger.get_recent_events(1)[0]
        assert event.category == "authentication"
        assert event.action == "login"
        assert event.status == "failure"

    def test_logout_revokes_token(self, client, alice):
        response = client.post("/api/auth/logout", headers=alice["headers"])
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out successfully"

        after = client.get("/api/auth/me", headers=alice["headers"])

        assert after.status_code == 401
        assert after.json()["message"] == "Token has been invalidated. Please login again"

    def test_logout_keeps_other_sessions(self, client, alice):
        second = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD}
        ).json()["data"]["token"]

        client.post("/api/auth/logout", headers=alice["headers"])

        assert client.get("/api/auth/me", headers=bearer(second)).status_code == 200


# ============================================================================
# PROFILE AND PASSWORD TESTS
# ============================================================================

class TestProfile:
    """Test profile reads and updates"""

    def test_me(self, client, alice):
        response = client.get("/api/auth/me", headers=alice["headers"])

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "alice@example.com"

    def test_update_profile(self, client, alice):
        response = client.put("/api/auth/profile", headers=alice["headers"], json={"name": "Alice Cooper"})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["name"] == "Alice Cooper"

    def test_update_profile_requires_a_field(self, client, alice):
        response = client.put("/api/auth/profile", headers=alice["headers"], json={})

        assert response.status_code == 400

    def test_email_taken_by_other_user(self, client, alice, bob):
        response = client.put("/api/auth/profile", headers=alice["headers"], json={"email": "bob@example.com"})

        assert response.status_code == 400
        assert response.json()["message"] == "Email is already in use"


class TestPasswordChange:
    """Test changing the password of a signed-in user"""

    def test_wrong_current_password(self, client, alice):
        response = client.put("/api/auth/password", headers=alice["headers"], json={
            "currentPassword": "Wrong$Pass1",
            "newPassword": "N3w$ecretPass",
        })

        assert response.status_code == 401
        assert response.json()["message"] == "Current password is incorrect"

    def test_change_rotates_token(self, client, alice):
        response = client.put("/api/auth/password", headers=alice["headers"], json={
            "currentPassword": STRONG_PASSWORD,
            "newPassword": "N3w$ecretPass",
        })

        assert response.status_code == 200
        new_token = response.json()["data"]["token"]
        assert client.get("/api/auth/me", headers=alice["headers"]).status_code == 401
        assert client.get("/api/auth/me", headers=bearer(new_token)).status_code == 200

        login = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "N3w$ecretPass"})
        assert login.status_code == 200


# ============================================================================
# PASSWORD RESET TESTS
# ============================================================================

class TestPasswordReset:
    """Test the forgot / reset password flow"""

    def _reset_token(self, email_service):
        tokens = [m.group(1) for body in email_service.bodies() for m in [RESET_LINK.search(body)] if m]
        assert tokens, "no reset email captured"
        return tokens[-1]

    def test_unknown_email_gets_same_response(self, client, email_service, alice):
        known = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]
        assert [to for to, _ in email_service.sent].count("ghost@example.com") == 0

    def test_only_hash_is_stored(self, client, db, email_service, alice):
        client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        token = self._reset_token(email_service)

        with db.get_session() as session:
            user = session.get(User, alice["id"])
            assert user.reset_password_token is not None
            assert user.reset_password_token != token
            assert user.reset_password_expire is not None

    def test_reset_flow(self, client, email_service, alice):
        client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        token = self._reset_token(email_service)

        response = client.post("/api/auth/reset-password", json={"token": token, "password": "R3set$Password"})

        assert response.status_code == 200
        assert response.json()["message"] == "Password reset successful"
        assert response.json()["data"]["token"]
        login = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "R3set$Password"})
        assert login.status_code == 200

    def test_reset_token_is_single_use(self, client, email_service, alice):
        client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        token = self._reset_token(email_service)
        client.post("/api/auth/reset-password", json={"token": token, "password": "R3set$Password"})

        again = client.post("/api/auth/reset-password", json={"token": token, "password": "An0ther$Pass"})

        assert again.status_code == 400
        assert again.json()["message"] == "Invalid or expired reset token"

    def test_unknown_reset_token(self, client, alice):
        response = client.post("/api/auth/reset-password", json={"token": "f" * 64, "password": "R3set$Password"})

        assert response.status_code == 400

    def test_send_failure_clears_token(self, client, db, email_service, alice):
        email_service.fail = True

        response = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})

        assert response.status_code == 500
        assert response.json()["message"] == "Email could not be sent"
        with db.get_session() as session:
            user = session.get(User, alice["id"])
            assert user.reset_password_token is None
            assert user.reset_password_expire is None

    def test_unconfigured_email_fails_reset_request(self, db, token_service, limiters, password_manager):
        dispatcher = NotificationDispatcher(db, EmailService(EmailConfig()), executor=InlineExecutor())
        client = TestClient(create_app(
            db_manager=db,
            dispatcher=dispatcher,
            token_service=token_service,
            limiters=limiters,
            password_manager=password_manager,
        ))
        register_user(client)

        response = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})

        assert response.status_code == 500
        with db.get_session() as session:
            assert session.query(User).one().reset_password_token is None
