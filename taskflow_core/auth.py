"""
JWT Authentication and Authorization Gate
=========================================
Features:
- Password hashing with bcrypt
- Password strength validation
- Signed session tokens (sub, iat, exp, jti) with revocation
- Bearer token extraction and identity resolution
- Ownership checks that never reveal whether a resource exists

Created: 2025-12-10
Author: jetgause
"""

import hashlib
import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

import bcrypt
from fastapi import Depends, Request
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import exists

from taskflow_core.database import DatabaseManager, User, utcnow
from taskflow_core.errors import AuthenticationFailure, AuthFailureReason, NotFoundOrDenied
from taskflow_core.kv_store import InMemoryKeyValueStore, KeyValueStore
from taskflow_core.logging_monitoring import EventCategory, audit_logger

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


# ========================
# Password Utilities
# ========================

class PasswordManager:
    """Password hashing and verification using bcrypt"""

    # bcrypt only looks at the first 72 bytes and bcrypt>=4.1 refuses longer input
    MAX_PASSWORD_BYTES = 72

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def _encode(self, password: str) -> bytes:
        return password.encode('utf-8')[:self.MAX_PASSWORD_BYTES]

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt"""
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(self._encode(password), salt).decode('utf-8')

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """Verify a password against its hash"""
        try:
            return bcrypt.checkpw(self._encode(plain_password), hashed_password.encode('utf-8'))
        except ValueError:
            logger.warning("Stored password hash is not a valid bcrypt hash")
            return False

    @staticmethod
    def validate_password_strength(password: str) -> tuple[bool, List[str]]:
        """
        Validate password strength and return validation status and errors

        Returns:
            tuple: (is_valid, error_messages)
        """
        errors = []

        if len(password) < 8:
            errors.append('Password must be at least 8 characters long')

        if not re.search(r'[A-Z]', password):
            errors.append('Password must contain at least one uppercase letter')

        if not re.search(r'[a-z]', password):
            errors.append('Password must contain at least one lowercase letter')

        if not re.search(r'\d', password):
            errors.append('Password must contain at least one digit')

        if not re.search(r'[@$!%*?&]', password):
            errors.append('Password must contain at least one special character (@$!%*?&)')

        return (len(errors) == 0, errors)


def generate_reset_token() -> tuple[str, str]:
    """Return (plain token for the email, sha256 hex digest for storage)."""
    plain = secrets.token_hex(32)
    return plain, hash_reset_token(plain)


def hash_reset_token(plain: str) -> str:
    return hashlib.sha256(plain.encode('utf-8')).hexdigest()


# ========================
# Token Service
# ========================

class TokenErrorKind(str, Enum):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    REVOKED = "revoked"


class TokenError(Exception):
    """Raised by ``TokenService.verify``; ``kind`` tells the gate which message to use."""

    def __init__(self, kind: TokenErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class TokenClaims:
    identity_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


class TokenService:
    """
    Issues and verifies HS256 session tokens.

    Revoked tokens are kept in a key-value store until their natural expiry,
    after which verification would reject them anyway.
    """

    REVOKED_PREFIX = "revoked:"

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        default_ttl: timedelta = timedelta(days=30),
        revocations: Optional[KeyValueStore] = None,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.default_ttl = default_ttl
        self.revocations = revocations if revocations is not None else InMemoryKeyValueStore()

    def issue(self, identity_id: str, ttl: Optional[timedelta] = None) -> str:
        """Create a signed token for identity_id."""
        now = utcnow()
        expire = now + (ttl if ttl is not None else self.default_ttl)
        to_encode = {
            "sub": str(identity_id),
            "iat": now,
            "exp": expire,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> TokenClaims:
        """Decode token, raising TokenError with the failure kind."""
        if self.is_revoked(token):
            raise TokenError(TokenErrorKind.REVOKED, "Token has been invalidated. Please login again")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise TokenError(TokenErrorKind.EXPIRED, "Token has expired. Please login again")
        except JWTError:
            raise TokenError(TokenErrorKind.MALFORMED, "Invalid token format")

        identity_id = payload.get("sub")
        if not identity_id or "exp" not in payload:
            raise TokenError(TokenErrorKind.MALFORMED, "Invalid token format")

        return TokenClaims(
            identity_id=identity_id,
            issued_at=_from_timestamp(payload.get("iat", 0)),
            expires_at=_from_timestamp(payload["exp"]),
            token_id=payload.get("jti", ""),
        )

    def revoke(self, token: str) -> None:
        """Reject token for the rest of its lifetime."""
        try:
            payload = jwt.decode(
                token, self.secret_key, algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
            remaining = float(payload.get("exp", 0)) - time.time()
        except JWTError:
            # Unparseable tokens can never verify; nothing to remember
            return
        if remaining <= 0:
            return
        self.revocations.set(self._key(token), True, ttl=remaining)

    def is_revoked(self, token: str) -> bool:
        return self.revocations.contains(self._key(token))

    def _key(self, token: str) -> str:
        return self.REVOKED_PREFIX + hashlib.sha256(token.encode('utf-8')).hexdigest()


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)


# ========================
# Authorization Gate
# ========================

def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@dataclass
class AuthContext:
    user: User
    token: str
    claims: TokenClaims


_REASONS = {
    TokenErrorKind.EXPIRED: AuthFailureReason.EXPIRED,
    TokenErrorKind.MALFORMED: AuthFailureReason.MALFORMED,
    TokenErrorKind.REVOKED: AuthFailureReason.REVOKED,
}


class AuthorizationGate:
    """Resolves the caller's identity and answers ownership questions."""

    def __init__(self, token_service: TokenService, db: DatabaseManager):
        self.token_service = token_service
        self.db = db

    def authenticate(self, request: Request) -> AuthContext:
        ip = client_ip(request)
        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            raise AuthenticationFailure(AuthFailureReason.NO_TOKEN, "Access denied. No token provided")

        try:
            claims = self.token_service.verify(token)
        except TokenError as e:
            audit_logger.log_authentication("token_rejected", False, user_ip=ip, reason=e.kind.value)
            raise AuthenticationFailure(_REASONS[e.kind], e.message)

        with self.db.get_session() as session:
            user = session.get(User, claims.identity_id)
            if user is None:
                audit_logger.log_authentication(
                    "token_rejected", False, user_id=claims.identity_id, user_ip=ip,
                    reason=AuthFailureReason.UNKNOWN_IDENTITY.value,
                )
                raise AuthenticationFailure(
                    AuthFailureReason.UNKNOWN_IDENTITY,
                    "Token is valid but user no longer exists",
                )
            user.last_activity = utcnow()

        request.state.user = user
        request.state.token = token
        return AuthContext(user=user, token=token, claims=claims)

    def owns(self, model, resource_id: str, owner_id: str) -> bool:
        """Single predicate: id matches, caller owns it and it is not deleted."""
        with self.db.get_session() as session:
            return session.query(
                exists().where(
                    model.id == resource_id,
                    model.owner_id == owner_id,
                    model.is_deleted.is_(False),
                )
            ).scalar()

    def check_ownership(self, model, resource_id: str, owner_id: str, label: str) -> None:
        if not self.owns(model, resource_id, owner_id):
            audit_logger.log_event(
                EventCategory.AUTHORIZATION, "ownership_check", "failure",
                user_id=owner_id, resource_type=label.lower(), resource_id=resource_id,
            )
            raise NotFoundOrDenied(f"{label} not found")


# ========================
# FastAPI Dependencies
# ========================

def get_gate(request: Request) -> AuthorizationGate:
    return request.app.state.gate


def get_auth_context(request: Request) -> AuthContext:
    """Dependency: authenticated caller or 401."""
    return get_gate(request).authenticate(request)


def get_current_user(auth: AuthContext = Depends(get_auth_context)) -> User:
    return auth.user


def require_ownership(model, label: str, param: str = "resource_id") -> Callable[..., str]:
    """
    Build a dependency that validates the path id and checks ownership.

    Returns the validated id so handlers do not parse it twice.
    """
    from taskflow_core.input_validator import validate_object_id

    def dependency(request: Request, auth: AuthContext = Depends(get_auth_context)) -> str:
        resource_id = validate_object_id(request.path_params[param])
        get_gate(request).check_ownership(model, resource_id, auth.user.id, label)
        return resource_id

    return dependency


__all__ = [
    "PasswordManager",
    "generate_reset_token",
    "hash_reset_token",
    "TokenErrorKind",
    "TokenError",
    "TokenClaims",
    "TokenService",
    "extract_bearer_token",
    "client_ip",
    "AuthContext",
    "AuthorizationGate",
    "get_gate",
    "get_auth_context",
    "get_current_user",
    "require_ownership",
]
