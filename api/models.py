"""
API request and response models for the credcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response, success or failure, is an Envelope: {success, data, message}.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Principal

# bcrypt only looks at the first 72 bytes.
_PASSWORD_MAX = 72


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Standard response wrapper for every endpoint."""

    success: bool
    data: Optional[Any] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class EmailRequest(BaseModel):
    """Body for resend-verification, forgot-password, send-otp and send-login-otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)


class OtpRequest(BaseModel):
    """Body for verify-otp and verify-login-otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    otp: str = Field(min_length=1, max_length=12)


class ResetPasswordRequest(BaseModel):
    """Body for reset-password. Accepts camelCase keys as well as snake_case."""

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(alias="newPassword", min_length=8, max_length=_PASSWORD_MAX)
    confirm_password: str = Field(alias="confirmPassword", min_length=1, max_length=_PASSWORD_MAX)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class TokenRequest(BaseModel):
    """Body for the broker's token endpoint."""

    code: str = Field(min_length=1, max_length=255)
    client_id: str = Field(min_length=1, max_length=64)
    client_secret: str = Field(min_length=1, max_length=255)
    redirect_uri: str = Field(min_length=1, max_length=2048)
    grant_type: str = Field(min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Response payloads (the `data` field of an Envelope)
# ---------------------------------------------------------------------------


class PrincipalProfile(BaseModel):
    """Public profile fields. Never includes hashes or pending-secret slots."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalProfile":
        return cls(id=principal.id, email=principal.email, name=principal.name, role=principal.role)


class MeResponse(PrincipalProfile):
    kind: str
    is_verified: bool
    two_factor_enabled: bool

    @classmethod
    def from_principal(cls, principal: Principal) -> "MeResponse":
        return cls(
            id=principal.id,
            email=principal.email,
            name=principal.name,
            role=principal.role,
            kind=principal.kind.value,
            is_verified=principal.is_verified,
            two_factor_enabled=principal.two_factor_enabled,
        )


class LoginData(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    principal: PrincipalProfile


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
