"""
Authentication API Router
=========================

Registration, login/logout, profile and password management.

Endpoints:
- POST /auth/register
- POST /auth/login
- POST /auth/logout
- GET  /auth/me
- PUT  /auth/profile
- PUT  /auth/password
- POST /auth/forgot-password
- POST /auth/reset-password

Author: jetgause
Created: 2025-12-10
"""

import logging

from fastapi import APIRouter, Depends, Request

from taskflow_core.auth import AuthContext, client_ip, get_auth_context
from taskflow_core.dependencies import (
    get_db,
    get_dispatcher,
    get_password_manager,
    get_token_service,
)
from taskflow_core.errors import AuthenticationFailure, ServerFault, success_response
from taskflow_core.input_validator import (
    ForgotPassword,
    PasswordChange,
    ProfileUpdate,
    ResetPassword,
    UserLogin,
    UserRegister,
)
from taskflow_core.logging_monitoring import EventCategory, audit_logger
from taskflow_core.repositories import UserRepository
from taskflow_core.security import rate_limit_dependency

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

auth_limit = Depends(rate_limit_dependency("auth"))
login_limit = Depends(rate_limit_dependency("login"))
general_limit = Depends(rate_limit_dependency("general"))
authenticated = Depends(get_auth_context)

RESET_REQUESTED_MESSAGE = "If an account with that email exists, a password reset link has been sent"


def _users(request: Request, session) -> UserRepository:
    return UserRepository(session, get_password_manager(request))


@router.post("/register", status_code=201, dependencies=[auth_limit])
def register(body: UserRegister, request: Request):
    with get_db(request).get_session() as session:
        user = _users(request, session).create(body.name, body.email, body.password)
        user_data = user.to_dict()

    token = get_token_service(request).issue(user.id)
    audit_logger.log_event(
        EventCategory.ACCOUNT, "register", "success", user_id=user.id, user_ip=client_ip(request)
    )
    get_dispatcher(request).send_welcome(user)

    return success_response(
        {"user": user_data, "token": token},
        "User registered successfully",
        status_code=201,
    )


@router.post("/login", dependencies=[login_limit])
def login(body: UserLogin, request: Request):
    ip = client_ip(request)
    try:
        with get_db(request).get_session() as session:
            user = _users(request, session).authenticate(body.email, body.password)
            user_data = user.to_dict()
    except AuthenticationFailure:
        audit_logger.log_authentication("login", False, user_ip=ip, email=body.email)
        raise

    audit_logger.log_authentication("login", True, user_id=user.id, user_ip=ip)
    token = get_token_service(request).issue(user.id)
    return success_response({"user": user_data, "token": token}, "Login successful")


@router.post("/logout", dependencies=[authenticated, general_limit])
def logout(request: Request, auth: AuthContext = Depends(get_auth_context)):
    get_token_service(request).revoke(auth.token)
    with get_db(request).get_session() as session:
        _users(request, session).record_logout(auth.user.id)

    audit_logger.log_authentication("logout", True, user_id=auth.user.id, user_ip=client_ip(request))
    return success_response(message="Logged out successfully")


@router.get("/me", dependencies=[authenticated, general_limit])
def get_me(request: Request, auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        user = _users(request, session).get_by_id(auth.user.id)
        user_data = user.to_dict() if user else auth.user.to_dict()
    return success_response({"user": user_data}, "User profile retrieved successfully")


@router.put("/profile", dependencies=[authenticated, auth_limit])
def update_profile(body: ProfileUpdate, request: Request, auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        user = _users(request, session).update_profile(auth.user, name=body.name, email=body.email)
        user_data = user.to_dict()
    return success_response({"user": user_data}, "Profile updated successfully")


@router.put("/password", dependencies=[authenticated, auth_limit])
def change_password(body: PasswordChange, request: Request, auth: AuthContext = Depends(get_auth_context)):
    ip = client_ip(request)
    try:
        with get_db(request).get_session() as session:
            _users(request, session).change_password(auth.user, body.current_password, body.new_password)
    except AuthenticationFailure:
        audit_logger.log_authentication("password_change", False, user_id=auth.user.id, user_ip=ip)
        raise

    tokens = get_token_service(request)
    tokens.revoke(auth.token)
    audit_logger.log_authentication("password_change", True, user_id=auth.user.id, user_ip=ip)
    return success_response({"token": tokens.issue(auth.user.id)}, "Password updated successfully")


@router.post("/forgot-password", dependencies=[auth_limit])
def forgot_password(body: ForgotPassword, request: Request):
    """
    Persist a reset token and email it.

    Unknown emails get the same response as known ones. If the email cannot
    be sent the stored token is cleared again and the request fails.
    """
    db = get_db(request)
    with db.get_session() as session:
        users = _users(request, session)
        user = users.get_by_email(body.email)
        if user is None:
            return success_response(message=RESET_REQUESTED_MESSAGE)
        token = users.create_password_reset_token(user)

    try:
        sent = get_dispatcher(request).send_password_reset(user, token)
    except Exception as e:
        logger.error(f"Password reset email for {user.id} failed: {e}")
        sent = False

    if not sent:
        with db.get_session() as session:
            _users(request, session).clear_password_reset_token(user)
        raise ServerFault("Email could not be sent")

    audit_logger.log_event(
        EventCategory.ACCOUNT, "password_reset_requested", "success",
        user_id=user.id, user_ip=client_ip(request),
    )
    return success_response(message=RESET_REQUESTED_MESSAGE)


@router.post("/reset-password", dependencies=[auth_limit])
def reset_password(body: ResetPassword, request: Request):
    with get_db(request).get_session() as session:
        user = _users(request, session).reset_password(body.token, body.password)
        user_id = user.id

    audit_logger.log_event(
        EventCategory.ACCOUNT, "password_reset", "success", user_id=user_id, user_ip=client_ip(request)
    )
    token = get_token_service(request).issue(user_id)
    return success_response({"token": token}, "Password reset successful")
