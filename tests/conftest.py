"""
Shared fixtures for the TaskFlow test suite.

The environment is set before anything imports ``config`` so the secret key
validation passes and the module-level app uses an in-memory database.
"""

import os
import sys
import smtplib
from concurrent.futures import Executor, Future
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_SECRET_KEY = "taskflow-test-secret-key-0123456789abcdefghijklmnop"

os.environ["SECRET_KEY"] = TEST_SECRET_KEY
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["EMAIL_USER"] = ""
os.environ["EMAIL_PASS"] = ""

from fastapi.testclient import TestClient  # noqa: E402

from api_server import create_app  # noqa: E402
from taskflow_core.auth import PasswordManager, TokenService  # noqa: E402
from taskflow_core.database import DatabaseConfig, DatabaseManager, utcnow  # noqa: E402
from taskflow_core.kv_store import InMemoryKeyValueStore  # noqa: E402
from taskflow_core.notifications import EmailConfig, EmailService, NotificationDispatcher  # noqa: E402
from taskflow_core.security import RateLimiterRegistry  # noqa: E402

STRONG_PASSWORD = "Sup3r$ecret"


# ============================================================================
# TEST DOUBLES
# ============================================================================

class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True, **kwargs):
        pass


class RecordingEmailService(EmailService):
    """Captures outgoing messages instead of talking to SMTP."""

    def __init__(self):
        super().__init__(EmailConfig(
            smtp_username="mailer@example.com",
            smtp_password="app-password",
            email_from="mailer@example.com",
            client_url="http://client.test",
        ))
        self.messages = []
        self.fail = False

    def _deliver(self, msg):
        if self.fail:
            raise smtplib.SMTPException("connection refused")
        self.messages.append(msg)

    @property
    def sent(self):
        return [(msg["To"], msg["Subject"]) for msg in self.messages]

    def bodies(self):
        return [
            part.get_payload(decode=True).decode()
            for msg in self.messages
            for part in msg.walk()
            if part.get_content_type() == "text/plain"
        ]


class FakeTimer:
    """Stand-in for ``threading.Timer`` that only fires when told to."""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def db():
    manager = DatabaseManager(DatabaseConfig("sqlite://"))
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def timers():
    FakeTimer.created = []
    return FakeTimer.created


@pytest.fixture
def dispatcher(db, email_service, timers):
    return NotificationDispatcher(
        db,
        email_service,
        executor=InlineExecutor(),
        timer_factory=FakeTimer,
    )


@pytest.fixture
def token_service():
    return TokenService(TEST_SECRET_KEY, revocations=InMemoryKeyValueStore())


@pytest.fixture
def limiters():
    # Generous limits; rate limit tests build their own registry
    return RateLimiterRegistry.from_settings(general=1000, auth=1000, login=1000, create=1000)


@pytest.fixture
def password_manager():
    return PasswordManager(rounds=4)


@pytest.fixture
def app(db, dispatcher, token_service, limiters, password_manager):
    return create_app(
        db_manager=db,
        dispatcher=dispatcher,
        token_service=token_service,
        limiters=limiters,
        password_manager=password_manager,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def register_user(client, name="Alice Smith", email="alice@example.com", password=STRONG_PASSWORD):
    response = client.post("/api/auth/register", json={
        "name": name,
        "email": email,
        "password": password,
        "confirmPassword": password,
    })
    assert response.status_code == 201, response.json()
    data = response.json()["data"]
    return {
        "id": data["user"]["id"],
        "email": email,
        "password": password,
        "token": data["token"],
        "headers": {"Authorization": f"Bearer {data['token']}"},
    }


def in_days(days, hours=0):
    return (utcnow() + timedelta(days=days, hours=hours)).isoformat() + "Z"


def create_task(client, user, **fields):
    fields.setdefault("title", "Write report")
    response = client.post("/api/tasks", headers=user["headers"], json=fields)
    assert response.status_code == 201, response.json()
    return response.json()["data"]["task"]


@pytest.fixture
def alice(client):
    return register_user(client)


@pytest.fixture
def bob(client):
    return register_user(client, name="Bob Jones", email="bob@example.com")
