"""
auth/verification.py -- Request/confirm protocol for every pending-secret flow.

One protocol, four kinds:

  kind                secret           stored as        TTL      side effect on confirm
  email_verification  opaque token     HMAC digest      24 h     is_verified = True
  password_reset      opaque token     HMAC digest      1 h      new password hash
  two_factor_otp      6-digit OTP      bcrypt hash      5 min    none (consume only)
  login_otp           6-digit OTP      bcrypt hash      5 min    bearer token + session row

request() overwrites the kind's slot, so a newer secret silently invalidates
an older one: the old value can never compare equal again.

confirm_*() check the slot (present, unexpired, matching) and then clear it
together with the side effect in one compare-and-set write. If the write
finds the slot changed, another confirmation won the race and this one fails
exactly like a wrong secret would. Every rejection is InvalidOrExpired with
the same message, whatever the cause.

Hashing runs inside these synchronous methods; the API layer calls them from
plain `def` routes so FastAPI executes them in its worker threadpool, off the
event loop.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING, Callable

from auth.errors import Conflict, DeliveryFailed, Forbidden, InvalidOrExpired, NotFound, Unauthorized, ValidationError
from auth.models import LoginResult, Principal, PrincipalKind, RequestMetadata, SecretKind, SecretSlot, utcnow
from auth.notify import LogNotifier, Notifier
from auth.tokens import authenticate_principal

if TYPE_CHECKING:
    from auth.sessions import SessionManager
    from auth.store import CredentialStore
    from auth.tokens import TokenIssuer
    from core.config import Settings

_TOKEN_KINDS = frozenset({SecretKind.email_verification, SecretKind.password_reset})

_REJECTED = {
    SecretKind.email_verification: "Invalid or expired token",
    SecretKind.password_reset: "Invalid or expired token",
    SecretKind.two_factor_otp: "OTP is invalid or expired",
    SecretKind.login_otp: "OTP is invalid or expired",
}


class VerificationService:
    """Issues and consumes pending secrets for users and admins alike.

    Usage:
        service = VerificationService(store, issuer, sessions, settings)
        service.request(SecretKind.login_otp, PrincipalKind.user, "a@x.com")
        result = service.confirm_login_otp(PrincipalKind.user, "a@x.com", "123456")
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        sessions: SessionManager,
        settings: Settings,
        notifier: Notifier | None = None,
        clock: Callable = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._sessions = sessions
        self._notifier = notifier or LogNotifier()
        self._clock = clock
        self._logger = logger or logging.getLogger("credcore.verification")
        self._ttls = {
            SecretKind.email_verification: settings.email_verification_ttl_seconds,
            SecretKind.password_reset: settings.password_reset_ttl_seconds,
            SecretKind.two_factor_otp: settings.two_factor_otp_ttl_seconds,
            SecretKind.login_otp: settings.login_otp_ttl_seconds,
        }

    def ttl(self, kind: SecretKind) -> timedelta:
        return timedelta(seconds=self._ttls[kind])

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request(self, kind: SecretKind, principal_kind: PrincipalKind, email: str) -> Principal:
        """Issue a new `kind` secret for the principal and hand it to the notifier.

        Raises:
            ValidationError: email missing.
            NotFound:        no principal of this kind with that email.
            Conflict:        email verification requested for a verified principal.
            Forbidden:       login OTP requested before the email is verified.
            DeliveryFailed:  the notifier raised. The secret stays persisted.
        """
        if not email:
            raise ValidationError("Email is required")
        principal = self._resolve_by_email(principal_kind, email, kind)
        if kind is SecretKind.email_verification and principal.is_verified:
            self._logger.info("%s principal %s already verified", principal_kind.value, principal.id)
            raise Conflict("Email already verified")
        if kind is SecretKind.login_otp and not principal.is_verified:
            self._logger.warning("Login OTP refused for unverified %s principal %s", principal_kind.value, principal.id)
            raise Forbidden("Please verify your email first")

        if kind in _TOKEN_KINDS:
            secret = self._issuer.new_opaque_token()
            stored = self._issuer.digest(secret)
        else:
            secret = self._issuer.new_numeric_otp()
            stored = self._issuer.hash_secret(secret)

        slot = SecretSlot(value=stored, expires_at=self._clock() + self.ttl(kind))
        updated = replace(principal, slots={**principal.slots, kind: slot})
        self._store.save(updated, fields={kind})
        self._logger.info("%s issued for %s principal %s", kind.value, principal_kind.value, principal.id)

        try:
            self._notifier.deliver(updated, kind, secret)
        except Exception as exc:
            self._logger.exception(
                "Delivery of %s failed for %s principal %s", kind.value, principal_kind.value, principal.id
            )
            raise DeliveryFailed() from exc
        return updated

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------

    def confirm_email(self, principal_kind: PrincipalKind, token: str) -> Principal:
        kind = SecretKind.email_verification
        principal = self._resolve_by_token(principal_kind, kind, token)
        slot = self._check(principal, kind, token)
        updated = self._commit(principal, kind, slot, is_verified=True)
        self._logger.info("Email verified for %s principal %s", principal_kind.value, principal.id)
        return updated

    def confirm_password_reset(
        self,
        principal_kind: PrincipalKind,
        token: str,
        new_password: str,
        confirm_password: str,
    ) -> Principal:
        """Set a new password. The two passwords are compared before the store is consulted."""
        if not token or not new_password or not confirm_password:
            raise ValidationError("Token and new passwords are required")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match")
        kind = SecretKind.password_reset
        principal = self._resolve_by_token(principal_kind, kind, token)
        slot = self._check(principal, kind, token)
        hashed = self._issuer.hash_secret(new_password)
        updated = self._commit(principal, kind, slot, hashed_password=hashed)
        self._logger.info("Password reset for %s principal %s", principal_kind.value, principal.id)
        return updated

    def confirm_two_factor(self, principal_kind: PrincipalKind, email: str, otp: str) -> Principal:
        kind = SecretKind.two_factor_otp
        if not email or not otp:
            raise ValidationError("Email and OTP are required")
        principal = self._resolve_by_email(principal_kind, email, kind)
        slot = self._check(principal, kind, otp)
        updated = self._commit(principal, kind, slot)
        self._logger.info("2FA OTP verified for %s principal %s", principal_kind.value, principal.id)
        return updated

    def confirm_login_otp(
        self,
        principal_kind: PrincipalKind,
        email: str,
        otp: str,
        metadata: RequestMetadata | None = None,
    ) -> LoginResult:
        """Consume the login OTP, then issue a bearer token and record the session."""
        kind = SecretKind.login_otp
        if not email or not otp:
            raise ValidationError("Email and OTP are required")
        principal = self._resolve_by_email(principal_kind, email, kind)
        slot = self._check(principal, kind, otp)
        updated = self._commit(principal, kind, slot)
        self._logger.info("Passwordless login for %s principal %s", principal_kind.value, principal.id)
        return self._start_session(updated, metadata, method="login_otp")

    # ------------------------------------------------------------------
    # Password login and 2FA toggle
    # ------------------------------------------------------------------

    def login_with_password(
        self,
        principal_kind: PrincipalKind,
        email: str,
        password: str,
        metadata: RequestMetadata | None = None,
    ) -> LoginResult:
        """Authenticate by password. Wrong email and wrong password fail identically."""
        principal = authenticate_principal(self._store, self._issuer, principal_kind, email, password)
        if principal is None:
            self._logger.warning("Password login failed for %s", principal_kind.value)
            raise Unauthorized("Invalid email or password")
        return self._start_session(principal, metadata, method="password")

    def set_two_factor(self, principal: Principal, enabled: bool) -> Principal:
        """Toggle two-factor for an already-authenticated principal."""
        updated = replace(principal, two_factor_enabled=enabled)
        self._store.save(updated, fields={"two_factor_enabled"})
        self._logger.info(
            "Two-factor %s for %s principal %s",
            "enabled" if enabled else "disabled",
            principal.kind.value,
            principal.id,
        )
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_by_email(self, principal_kind: PrincipalKind, email: str, kind: SecretKind) -> Principal:
        principal = self._store.find_by_email(principal_kind, email)
        if principal is None:
            self._logger.warning("%s: no %s principal with that email", kind.value, principal_kind.value)
            raise NotFound(f"{principal_kind.value.capitalize()} not found")
        return principal

    def _resolve_by_token(self, principal_kind: PrincipalKind, kind: SecretKind, token: str) -> Principal:
        if not token:
            raise ValidationError("Token is required")
        principal = self._store.find_by_secret(principal_kind, kind, self._issuer.digest(token))
        if principal is None:
            # Unknown, consumed and superseded tokens all land here.
            self._logger.warning("%s confirm with unknown token for %s", kind.value, principal_kind.value)
            raise InvalidOrExpired(_REJECTED[kind])
        return principal

    def _check(self, principal: Principal, kind: SecretKind, secret: str) -> SecretSlot:
        """Return the pending slot if `secret` may consume it, else raise InvalidOrExpired."""
        slot = principal.slots.get(kind)
        if slot is None:
            if kind not in _TOKEN_KINDS:
                self._issuer.verify_secret(secret, self._issuer.dummy_hash)
            reason = "no pending secret"
        elif slot.expires_at <= self._clock():
            reason = "expired"
        elif not self._matches(kind, secret, slot):
            reason = "mismatch"
        else:
            return slot
        self._logger.warning(
            "%s rejected for %s principal %s (%s)", kind.value, principal.kind.value, principal.id, reason
        )
        raise InvalidOrExpired(_REJECTED[kind])

    def _matches(self, kind: SecretKind, secret: str, slot: SecretSlot) -> bool:
        if kind in _TOKEN_KINDS:
            return self._issuer.digest_matches(secret, slot.value)
        return self._issuer.verify_secret(secret, slot.value)

    def _commit(self, principal: Principal, kind: SecretKind, slot: SecretSlot, **changes) -> Principal:
        """Clear the slot and apply `changes` in one conditional write."""
        remaining = {k: v for k, v in principal.slots.items() if k is not kind}
        updated = replace(principal, slots=remaining, **changes)
        if not self._store.save(updated, expect=(kind, slot), fields={kind, *changes}):
            self._logger.warning(
                "%s for %s principal %s was consumed concurrently", kind.value, principal.kind.value, principal.id
            )
            raise InvalidOrExpired(_REJECTED[kind])
        return updated

    def _start_session(self, principal: Principal, metadata: RequestMetadata | None, method: str) -> LoginResult:
        token = self._issuer.issue_bearer_token(
            principal.id,
            principal.email,
            principal.kind,
            extra_claims={"role": principal.role},
        )
        session = self._sessions.record_session(principal, token, metadata, method=method)
        self._store.update_last_login(principal.kind, principal.id)
        return LoginResult(
            principal=principal,
            access_token=token,
            expires_in=self._issuer.token_ttl,
            session=session,
        )
