"""
auth/models.py -- Domain dataclasses for credential lifecycle entities.

Pattern: Data class (pure data containers). Dataclasses own domain shape;
the store, the verification service and the broker do the work.

A Principal is either a User or an Admin, distinguished by `kind`. Pending
secrets live in `slots`, keyed by SecretKind. A SecretSlot pairs the stored
value (bcrypt hash or HMAC digest, never plaintext) with its expiry, so the
two are always set and cleared together: a kind is either present in the
dict with both fields, or absent.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Default clock for every component. Tests inject their own."""
    return datetime.now(timezone.utc)


class PrincipalKind(str, Enum):
    user = "user"
    admin = "admin"


class SecretKind(str, Enum):
    email_verification = "email_verification"
    password_reset = "password_reset"
    two_factor_otp = "two_factor_otp"
    login_otp = "login_otp"


class Capability(str, Enum):
    """Admin capabilities. Replaces one boolean column per permission."""

    manage_users = "manage_users"
    manage_content = "manage_content"
    manage_payments = "manage_payments"
    view_reports = "view_reports"
    approve_new_admins = "approve_new_admins"
    suspend_users = "suspend_users"
    delete_data = "delete_data"
    export_data = "export_data"
    promote_demote_admins = "promote_demote_admins"
    modify_admin_permissions = "modify_admin_permissions"
    override_security_settings = "override_security_settings"


# Default capability set granted to an admin created with a given role.
ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "Super Admin": frozenset(Capability),
    "Admin": frozenset(
        {
            Capability.manage_users,
            Capability.manage_content,
            Capability.view_reports,
            Capability.suspend_users,
            Capability.export_data,
        }
    ),
    "Moderator": frozenset({Capability.manage_content, Capability.suspend_users}),
}

USER_ROLE = "user"


@dataclass(frozen=True)
class SecretSlot:
    """One pending verification/reset/OTP request for a principal."""

    value: str  # bcrypt hash (OTP kinds) or HMAC digest (token kinds)
    expires_at: datetime


@dataclass
class Principal:
    """An account that can authenticate: a User or an Admin.

    email is stored normalized (stripped, lowercased) and is unique per kind.
    role is "user" for users; for admins one of the ROLE_CAPABILITIES keys.
    capabilities is always empty for users.

    id is None before the record is written to the database.
    """

    kind: PrincipalKind
    email: str
    name: str
    hashed_password: str
    role: str = USER_ROLE
    id: int | None = None
    is_verified: bool = False
    two_factor_enabled: bool = False
    capabilities: frozenset[Capability] = frozenset()
    slots: dict[SecretKind, SecretSlot] = field(default_factory=dict)
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class Client:
    """A registered relying party of the authorization broker.

    secret_digest is HMAC-SHA256(SECRET_KEY, raw_secret). The raw secret is
    shown once at registration and never persisted.
    """

    client_id: str
    name: str
    secret_digest: str
    redirect_uris: frozenset[str] = frozenset()
    is_active: bool = True
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuthorizationCode:
    """A single-use, short-lived code bound to (client, principal, redirect_uri)."""

    code_digest: str
    client_id: str
    principal_kind: PrincipalKind
    principal_id: int
    redirect_uri: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: datetime | None = None
    id: int | None = None


@dataclass
class Session:
    """Audit record of one bearer-token issuance. Never used for authorization.

    token_digest is SHA-256 of the bearer token so the audit row can be
    matched to a presented token without storing the token itself.
    """

    id: str
    principal_kind: PrincipalKind
    principal_id: int
    token_digest: str
    method: str  # "login_otp" | "password"
    created_at: str
    expires_at: str
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class RequestMetadata:
    """Request context captured for the session audit trail."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class LoginResult:
    """Outcome of a successful login: the principal, its bearer token and the audit row."""

    principal: Principal
    access_token: str
    expires_in: int
    session: Session
