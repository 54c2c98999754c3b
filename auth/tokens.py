"""
auth/tokens.py -- Secret generation, hashing, bearer tokens and the auth cookie.

Security design decisions:
  Bearer tokens: python-jose with HS256. Tokens carry principal_id, email,
       kind and expiry. The signing key is different per principal kind, so a
       user token never verifies as an admin token even if the claims were
       edited. Verification returns None on any failure -- callers turn that
       into Unauthorized.

  Low-entropy secrets (passwords, 6-digit OTP codes): bcrypt. Its cost
       factor is what makes a leaked OTP hash useless during the code's
       five-minute lifetime. The dummy hash enables timing equalization in
       authenticate_principal() so response time does not reveal whether an
       email exists [C1].

  High-entropy secrets (opaque email/reset tokens, authorization codes,
       client secrets): HMAC-SHA256(SECRET_KEY, value). 256-bit random values
       do not need bcrypt's slowness, and a deterministic digest lets the
       store find the row by value in O(1). An attacker holding the database
       but not SECRET_KEY cannot use the digests.

  OTP codes: secrets.randbelow() so every code in 100000-999999 is equally
       likely. random.random() is not a CSPRNG.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import cached_property
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import ValidationError
from auth.models import PrincipalKind

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import CredentialStore
    from core.config import Settings

_ALGORITHM = "HS256"
_BCRYPT_MAX_BYTES = 72
_COOKIE_NAME = "access_token"


class TokenIssuer:
    """Every secret the core hands out or checks goes through this class.

    Usage:
        issuer = TokenIssuer(get_settings())
        otp = issuer.new_numeric_otp()
        stored = issuer.hash_secret(otp)
        issuer.verify_secret(otp, stored)  # True
    """

    def __init__(self, settings: Settings, logger: logging.Logger | None = None) -> None:
        self._settings = settings
        self._logger = logger or logging.getLogger("credcore.tokens")

    @property
    def token_ttl(self) -> int:
        return self._settings.token_expire_seconds

    # ------------------------------------------------------------------
    # Random values
    # ------------------------------------------------------------------

    def new_opaque_token(self) -> str:
        """Return a URL-safe random token with 256 bits of entropy."""
        return secrets.token_urlsafe(32)

    def new_numeric_otp(self) -> str:
        """Return a 6-digit code drawn uniformly from 100000-999999 inclusive."""
        return str(secrets.randbelow(900000) + 100000)

    def new_authorization_code(self) -> str:
        return secrets.token_urlsafe(32)

    def new_client_secret(self) -> str:
        return secrets.token_urlsafe(32)

    # ------------------------------------------------------------------
    # bcrypt (passwords, OTP codes)
    # ------------------------------------------------------------------

    def hash_secret(self, plain: str) -> str:
        """Return a salted bcrypt hash of `plain`.

        bcrypt only looks at the first 72 bytes and current releases refuse
        longer input, so longer values are rejected here with ValidationError.
        """
        encoded = plain.encode("utf-8")
        if len(encoded) > _BCRYPT_MAX_BYTES:
            raise ValidationError("Password is too long")
        rounds = self._settings.bcrypt_rounds
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")

    def verify_secret(self, plain: str, hashed: str) -> bool:
        """Return True if `plain` matches the bcrypt hash. Malformed input is a mismatch."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    @cached_property
    def dummy_hash(self) -> str:
        """Hash verified against when the principal does not exist [C1].

        Computed once per issuer so the first failed lookup is not measurably
        slower than later ones.
        """
        return self.hash_secret("credcore_timing_dummy")

    # ------------------------------------------------------------------
    # HMAC digests (opaque tokens, authorization codes, client secrets)
    # ------------------------------------------------------------------

    def digest(self, value: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, value) as a hex string."""
        return hmac.new(
            self._settings.secret_key.encode(),
            value.encode(),
            hashlib.sha256,
        ).hexdigest()

    def digest_matches(self, value: str, expected_digest: str) -> bool:
        """Constant-time comparison of digest(value) against a stored digest."""
        return hmac.compare_digest(self.digest(value), expected_digest)

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------

    def _signing_key(self, kind: PrincipalKind) -> str:
        """Per-kind signing key: explicit override, or derived from SECRET_KEY."""
        override = {
            PrincipalKind.user: self._settings.user_signing_key,
            PrincipalKind.admin: self._settings.admin_signing_key,
        }[kind]
        if override:
            return override
        return hmac.new(
            self._settings.secret_key.encode(),
            f"credcore.bearer.{kind.value}".encode(),
            hashlib.sha256,
        ).hexdigest()

    def issue_bearer_token(
        self,
        principal_id: int,
        email: str,
        kind: PrincipalKind,
        extra_claims: dict[str, Any] | None = None,
        expire_seconds: int = 0,
    ) -> str:
        """Encode a signed JWT for a principal.

        Args:
            principal_id:   Database ID of the principal.
            email:          Principal email, carried for display only.
            kind:           Selects the signing key.
            extra_claims:   Added to the payload (e.g. "aud" for broker tokens).
                            Cannot override the identity claims.
            expire_seconds: Token lifetime. 0 means Settings.token_expire_seconds.
        """
        duration = expire_seconds if expire_seconds > 0 else self.token_ttl
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = dict(extra_claims or {})
        payload.update(
            {
                "sub": str(principal_id),
                "principal_id": principal_id,
                "email": email,
                "kind": kind.value,
                "iat": now,
                "exp": now + timedelta(seconds=duration),
            }
        )
        return jwt.encode(payload, self._signing_key(kind), algorithm=_ALGORITHM)

    def decode_bearer_token(self, token: str, kind: PrincipalKind, audience: str | None = None) -> dict | None:
        """Verify signature, expiry and kind. Returns the payload or None on any failure.

        When `audience` is None the "aud" claim is not checked; the caller
        decides what a token carrying one may be used for.
        """
        options = {} if audience else {"verify_aud": False}
        try:
            payload = jwt.decode(
                token,
                self._signing_key(kind),
                algorithms=[_ALGORITHM],
                audience=audience,
                options=options,
            )
        except JWTError:
            return None
        if payload.get("kind") != kind.value or "principal_id" not in payload:
            return None
        return payload


# ---------------------------------------------------------------------------
# Password authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_principal(
    store: CredentialStore,
    issuer: TokenIssuer,
    kind: PrincipalKind,
    email: str,
    password: str,
) -> Principal | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the principal exists:
    - Unknown email: bcrypt runs against the dummy hash (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the Principal on success, None on any failure.
    """
    principal = store.find_by_email(kind, email)
    if principal is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        issuer.verify_secret(password, issuer.dummy_hash)
        return None
    if not issuer.verify_secret(password, principal.hashed_password):
        return None
    return principal


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, settings: Settings) -> None:
    """Write the bearer token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS; on unless DEBUG (see Settings).
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        _COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="strict",
        secure=bool(settings.secure_cookies),
        max_age=settings.token_expire_seconds,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(_COOKIE_NAME)


def cookie_token(request) -> str | None:
    return request.cookies.get(_COOKIE_NAME)
