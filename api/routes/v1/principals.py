"""
api/routes/v1/principals.py -- Credential lifecycle endpoints for users and admins.

Every path is mounted under /api/v{n}/{role}/ with role in (user, admin).
The same handler serves both kinds; the role selects the principal table
partition and the token signing key.

Routes:
  POST /{role}/login                 -- password login; sets session cookie
  POST /{role}/logout                -- clears the session cookie
  GET  /{role}/me                    -- current principal (requires session)
  POST /{role}/resend-verification   -- issue email verification token
  GET  /{role}/verify-email?token=   -- confirm email verification
  POST /{role}/forgot-password       -- issue password reset token
  POST /{role}/reset-password        -- confirm password reset
  POST /{role}/send-otp              -- issue 2FA OTP (alias: send-twofactor-otp)
  POST /{role}/verify-otp            -- confirm 2FA OTP (alias: verify-twofactor-otp)
  POST /{role}/send-login-otp        -- issue passwordless login OTP
  POST /{role}/verify-login-otp      -- confirm login OTP; sets session cookie
  POST /{role}/enable-two-factor     -- requires session
  POST /{role}/disable-two-factor    -- requires session

Handlers are plain `def`: every one of them may run bcrypt, and
FastAPI runs sync handlers in its threadpool instead of on the event loop.

Errors are raised as auth.errors.AuthError and turned into the envelope by
the exception handler in api/main.py.

Security:
  [H2] POST /login is rate-limited per IP.
  [C1] VerificationService.login_with_password() equalizes timing for unknown emails.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    EmailRequest,
    Envelope,
    LoginData,
    LoginRequest,
    MeResponse,
    OtpRequest,
    PrincipalProfile,
    ResetPasswordRequest,
)
from auth.dependencies import get_current_principal
from auth.models import LoginResult, Principal, PrincipalKind, RequestMetadata, SecretKind
from auth.tokens import clear_auth_cookie, set_auth_cookie
from auth.verification import VerificationService
from core.config import get_settings

router = APIRouter()


def _service(request: Request) -> VerificationService:
    return request.app.state.verification


def _metadata(request: Request) -> RequestMetadata:
    return RequestMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _ok(message: str, data=None) -> Envelope:
    return Envelope(success=True, data=data, message=message)


def _login_response(request: Request, result: LoginResult, message: str) -> JSONResponse:
    data = LoginData(
        access_token=result.access_token,
        expires_in=result.expires_in,
        principal=PrincipalProfile.from_principal(result.principal),
    )
    resp = JSONResponse(status_code=200, content=_ok(message, data.model_dump()).model_dump())
    set_auth_cookie(resp, result.access_token, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password session
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/{role}/login")
def login(request: Request, role: PrincipalKind, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie."""
    result = _service(request).login_with_password(role, body.email, body.password, _metadata(request))
    return _login_response(request, result, "Login successful")


@router.post("/{role}/logout")
def logout(role: PrincipalKind) -> JSONResponse:
    """Clear the session cookie. Bearer tokens stay valid until they expire."""
    resp = JSONResponse(content=_ok("Logged out").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/{role}/me")
def me(principal: Principal = Depends(get_current_principal)) -> Envelope:
    return _ok("Authenticated", MeResponse.from_principal(principal).model_dump())


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/{role}/resend-verification")
def resend_verification(request: Request, role: PrincipalKind, body: EmailRequest) -> Envelope:
    _service(request).request(SecretKind.email_verification, role, body.email)
    return _ok("Verification email sent")


@router.get("/{role}/verify-email")
def verify_email(
    request: Request,
    role: PrincipalKind,
    token: str = Query(min_length=1, max_length=255),
) -> Envelope:
    _service(request).confirm_email(role, token)
    return _ok("Email verified successfully")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/{role}/forgot-password")
def forgot_password(request: Request, role: PrincipalKind, body: EmailRequest) -> Envelope:
    _service(request).request(SecretKind.password_reset, role, body.email)
    return _ok("Password reset email sent")


@router.post("/{role}/reset-password")
def reset_password(request: Request, role: PrincipalKind, body: ResetPasswordRequest) -> Envelope:
    _service(request).confirm_password_reset(role, body.token, body.new_password, body.confirm_password)
    return _ok("Password reset successful")


# ---------------------------------------------------------------------------
# Two-factor OTP
# ---------------------------------------------------------------------------


@router.post("/{role}/send-otp")
@router.post("/{role}/send-twofactor-otp")
def send_two_factor_otp(request: Request, role: PrincipalKind, body: EmailRequest) -> Envelope:
    _service(request).request(SecretKind.two_factor_otp, role, body.email)
    return _ok("2FA OTP sent to email")


@router.post("/{role}/verify-otp")
@router.post("/{role}/verify-twofactor-otp")
def verify_two_factor_otp(request: Request, role: PrincipalKind, body: OtpRequest) -> Envelope:
    _service(request).confirm_two_factor(role, body.email, body.otp)
    return _ok("2FA OTP verified successfully")


@router.post("/{role}/enable-two-factor")
def enable_two_factor(request: Request, principal: Principal = Depends(get_current_principal)) -> Envelope:
    _service(request).set_two_factor(principal, True)
    return _ok("Two-factor authentication enabled")


@router.post("/{role}/disable-two-factor")
def disable_two_factor(request: Request, principal: Principal = Depends(get_current_principal)) -> Envelope:
    _service(request).set_two_factor(principal, False)
    return _ok("Two-factor authentication disabled")


# ---------------------------------------------------------------------------
# Passwordless login
# ---------------------------------------------------------------------------


@router.post("/{role}/send-login-otp")
def send_login_otp(request: Request, role: PrincipalKind, body: EmailRequest) -> Envelope:
    _service(request).request(SecretKind.login_otp, role, body.email)
    return _ok("Login OTP sent to email")


@router.post("/{role}/verify-login-otp")
def verify_login_otp(request: Request, role: PrincipalKind, body: OtpRequest) -> JSONResponse:
    result = _service(request).confirm_login_otp(role, body.email, body.otp, _metadata(request))
    return _login_response(request, result, "Login successful via OTP")
