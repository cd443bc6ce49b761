from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from authkeep.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
    VerifyEmailRequest,
)
from authkeep.logging import get_logger
from authkeep.service.auth import AuthContext
from authkeep.service.errors import InvalidTokenError
from authkeep.service.runtime import check_rate_limit, get_runtime
from authkeep.storage.errors import StoreUnavailable

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"
RESET_PASSWORD_MESSAGE = "Password has been reset successfully"
VERIFY_EMAIL_MESSAGE = "Email verified successfully"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime, request: Request, action: str) -> None:
    await check_rate_limit(
        runtime,
        f"{action}:{_client_ip(request)}",
        runtime.settings.rate_limit_per_minute,
        60,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token into an authenticated principal."""
    return get_runtime().auth.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create an account and start a session.

    A verification link is sent to the address; the account is usable before
    the address is verified.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "register")
    user, tokens = await runtime.auth.register(body.email, body.password, body.name)
    return Envelope(status="ok", data=AuthResponse.from_session(user, tokens))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "login")
    user, tokens = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=AuthResponse.from_session(user, tokens))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest, request: Request):
    """Rotate a refresh token; the submitted token is consumed."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "refresh")
    user, tokens = await runtime.auth.rotate_session(body.refresh_token)
    return Envelope(status="ok", data=AuthResponse.from_session(user, tokens))


@router.post("/logout", status_code=204)
async def logout(body: Optional[LogoutRequest] = None):
    """Revoke the refresh token if one is supplied. Always answers 204."""
    runtime = get_runtime()
    refresh_token = body.refresh_token if body else None
    try:
        await runtime.auth.terminate_session(refresh_token)
    except StoreUnavailable as exc:
        logger.warning("logout_revoke_failed", error=exc.message)
    return Response(status_code=204)


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "forgot_password")
    await runtime.auth.issue_password_reset(body.email)
    # Same response whether or not the account exists
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "reset_password")
    try:
        await runtime.auth.redeem_password_reset(body.token, body.new_password)
    except InvalidTokenError as exc:
        raise InvalidTokenError(exc.message, status_code=400) from exc
    return Envelope(status="ok", data=MessageResponse(message=RESET_PASSWORD_MESSAGE))


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "verify_email")
    try:
        await runtime.auth.redeem_email_verification(body.token)
    except InvalidTokenError as exc:
        raise InvalidTokenError(exc.message, status_code=400) from exc
    return Envelope(status="ok", data=MessageResponse(message=VERIFY_EMAIL_MESSAGE))


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_current_user(principal)
    return Envelope(status="ok", data=UserResponse.from_user(user))
