"""Unit tests for auth/tokens.py -- secret generation, hashing and bearer tokens.

Covers:
- numeric OTPs are 6 digits in 100000-999999
- bcrypt hash/verify, malformed hashes, and the 72-byte limit
- HMAC digests are deterministic and keyed with SECRET_KEY
- bearer tokens round-trip for their own kind only
- per-kind signing keys (user token rejected on admin, and vice versa)
- expired and tampered tokens are rejected
- authenticate_principal() for unknown email, wrong password, success
"""

from __future__ import annotations

import pytest
from jose import jwt

from auth.errors import ValidationError
from auth.models import PrincipalKind
from auth.tokens import TokenIssuer, authenticate_principal
from core.config import Settings
from tests.helpers import PASSWORD, make_principal


class TestRandomValues:
    def test_numeric_otp_is_six_digits_in_range(self, issuer: TokenIssuer) -> None:
        """OTPs are six digits between 100000 and 999999."""
        for _ in range(200):
            otp = issuer.new_numeric_otp()
            assert len(otp) == 6
            assert otp.isdigit()
            assert 100000 <= int(otp) <= 999999

    def test_opaque_tokens_are_unique_and_url_safe(self, issuer: TokenIssuer) -> None:
        """Opaque tokens are unique, long and URL-safe."""
        tokens = {issuer.new_opaque_token() for _ in range(50)}
        assert len(tokens) == 50
        for token in tokens:
            assert len(token) >= 43
            assert all(c.isalnum() or c in "-_" for c in token)


class TestHashing:
    def test_hash_then_verify(self, issuer: TokenIssuer) -> None:
        """bcrypt hashes verify the right secret only."""
        hashed = issuer.hash_secret("123456")
        assert hashed != "123456"
        assert hashed.startswith("$2")
        assert issuer.verify_secret("123456", hashed)
        assert not issuer.verify_secret("654321", hashed)

    def test_hashes_are_salted(self, issuer: TokenIssuer) -> None:
        """Two hashes of one secret differ."""
        assert issuer.hash_secret("123456") != issuer.hash_secret("123456")

    def test_malformed_hash_is_a_mismatch(self, issuer: TokenIssuer) -> None:
        """A value that is not a bcrypt hash verifies as False."""
        assert issuer.verify_secret("123456", "not-a-bcrypt-hash") is False

    def test_over_72_bytes_rejected(self, issuer: TokenIssuer) -> None:
        """Secrets longer than bcrypt's 72-byte limit raise ValidationError."""
        with pytest.raises(ValidationError):
            issuer.hash_secret("x" * 73)

    def test_digest_is_deterministic_and_keyed(self, issuer: TokenIssuer) -> None:
        """HMAC digests repeat for one key and differ across keys."""
        other = TokenIssuer(Settings(debug=True, secret_key="o" * 48, bcrypt_rounds=4))
        assert issuer.digest("value") == issuer.digest("value")
        assert issuer.digest("value") != other.digest("value")
        assert issuer.digest_matches("value", issuer.digest("value"))
        assert not issuer.digest_matches("other", issuer.digest("value"))


class TestBearerTokens:
    def test_round_trip(self, issuer: TokenIssuer) -> None:
        """A user token decodes to its principal id, subject, email and kind."""
        token = issuer.issue_bearer_token(7, "a@x.com", PrincipalKind.user)
        payload = issuer.decode_bearer_token(token, PrincipalKind.user)
        assert payload is not None
        assert payload["principal_id"] == 7
        assert payload["sub"] == "7"
        assert payload["email"] == "a@x.com"
        assert payload["kind"] == "user"

    def test_user_token_rejected_as_admin(self, issuer: TokenIssuer) -> None:
        """A user token does not decode with the admin key."""
        token = issuer.issue_bearer_token(1, "a@x.com", PrincipalKind.user)
        assert issuer.decode_bearer_token(token, PrincipalKind.admin) is None

    def test_admin_token_rejected_as_user(self, issuer: TokenIssuer) -> None:
        """An admin token does not decode with the user key."""
        token = issuer.issue_bearer_token(1, "root@x.com", PrincipalKind.admin)
        assert issuer.decode_bearer_token(token, PrincipalKind.user) is None

    def test_explicit_signing_keys(self) -> None:
        """USER_SIGNING_KEY is used as-is when set."""
        settings = Settings(
            debug=True,
            secret_key="s" * 48,
            user_signing_key="u" * 40,
            admin_signing_key="a" * 40,
            bcrypt_rounds=4,
        )
        issuer = TokenIssuer(settings)
        token = issuer.issue_bearer_token(3, "a@x.com", PrincipalKind.user)
        assert jwt.decode(token, "u" * 40, algorithms=["HS256"])["principal_id"] == 3

    def test_expired_token_rejected(self, issuer: TokenIssuer) -> None:
        """A token past exp decodes to None."""
        stale = jwt.encode(
            {"principal_id": 1, "kind": "user", "exp": 1},
            issuer._signing_key(PrincipalKind.user),
            algorithm="HS256",
        )
        assert issuer.decode_bearer_token(stale, PrincipalKind.user) is None

    def test_tampered_token_rejected(self, issuer: TokenIssuer) -> None:
        """A modified signature or garbage input decodes to None."""
        token = issuer.issue_bearer_token(1, "a@x.com", PrincipalKind.user)
        head, body, sig = token.split(".")
        flipped = sig[:-2] + ("AA" if sig[-2:] != "AA" else "BB")
        assert issuer.decode_bearer_token(f"{head}.{body}.{flipped}", PrincipalKind.user) is None
        assert issuer.decode_bearer_token("garbage", PrincipalKind.user) is None

    def test_extra_claims_cannot_override_identity(self, issuer: TokenIssuer) -> None:
        """extra_claims cannot replace principal_id."""
        token = issuer.issue_bearer_token(
            1, "a@x.com", PrincipalKind.user, extra_claims={"principal_id": 99, "role": "x"}
        )
        payload = issuer.decode_bearer_token(token, PrincipalKind.user)
        assert payload["principal_id"] == 1
        assert payload["role"] == "x"

    def test_audience_checked_when_requested(self, issuer: TokenIssuer) -> None:
        """aud is enforced only when an audience is passed."""
        token = issuer.issue_bearer_token(1, "a@x.com", PrincipalKind.user, extra_claims={"aud": "rp"})
        assert issuer.decode_bearer_token(token, PrincipalKind.user, audience="rp") is not None
        assert issuer.decode_bearer_token(token, PrincipalKind.user, audience="other") is None
        assert issuer.decode_bearer_token(token, PrincipalKind.user)["aud"] == "rp"


class TestAuthenticatePrincipal:
    def test_success(self, store, issuer) -> None:
        """The right email (any case) and password return the principal."""
        alice = make_principal(store, issuer)
        found = authenticate_principal(store, issuer, PrincipalKind.user, "ALICE@example.com", PASSWORD)
        assert found is not None
        assert found.id == alice.id

    def test_wrong_password(self, store, issuer) -> None:
        """A wrong password returns None."""
        make_principal(store, issuer)
        assert authenticate_principal(store, issuer, PrincipalKind.user, "alice@example.com", "nope-nope") is None

    def test_unknown_email(self, store, issuer) -> None:
        """An unknown email returns None."""
        assert authenticate_principal(store, issuer, PrincipalKind.user, "ghost@example.com", PASSWORD) is None

    def test_kind_partition(self, store, issuer) -> None:
        """A user's credentials do not authenticate as an admin."""
        make_principal(store, issuer)
        assert authenticate_principal(store, issuer, PrincipalKind.admin, "alice@example.com", PASSWORD) is None
