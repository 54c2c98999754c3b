"""Unit tests for auth/store.py -- CredentialStore persistence.

Covers:
- (kind, email) uniqueness and case-insensitive lookup
- slots round-trip with their expiry and are cleared together
- save(fields=...) only writes the named fields
- save(expect=...) compare-and-set succeeds once, then reports the lost race
- consume_authorization_code() is single-use, checks client, redirect, principal
  kind and expiry (a code is already expired at exactly expires_at)
- purge_authorization_codes() removes expired rows only
- sessions are listed newest first
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import NotFound
from auth.models import AuthorizationCode, PrincipalKind, SecretKind, SecretSlot, Session
from auth.store import CredentialStore, to_iso
from tests.helpers import FrozenClock, make_principal, register_client


class TestPrincipals:
    def test_email_unique_per_kind(self, store: CredentialStore, issuer) -> None:
        """(kind, email) is unique; the same email may exist once per kind."""
        make_principal(store, issuer, email="a@x.com")
        with pytest.raises(IntegrityError):
            make_principal(store, issuer, email="A@X.com ")
        # Same email as an admin is a different principal.
        admin = make_principal(store, issuer, kind=PrincipalKind.admin, email="a@x.com")
        assert admin.kind is PrincipalKind.admin

    def test_find_by_email_is_case_insensitive(self, store, issuer) -> None:
        """Emails are stored lower-cased and looked up ignoring case and whitespace."""
        created = make_principal(store, issuer, email="Mixed@Example.com")
        assert created.email == "mixed@example.com"
        found = store.find_by_email(PrincipalKind.user, "  MIXED@example.COM ")
        assert found is not None and found.id == created.id

    def test_find_respects_kind(self, store, issuer) -> None:
        """A user is invisible to admin lookups."""
        user = make_principal(store, issuer)
        assert store.find_by_id(PrincipalKind.admin, user.id) is None
        assert store.find_by_email(PrincipalKind.admin, user.email) is None

    def test_admin_capabilities_round_trip(self, store, issuer) -> None:
        """An admin role loads with its capability set."""
        admin = make_principal(store, issuer, kind=PrincipalKind.admin, role="Moderator")
        assert admin.role == "Moderator"
        assert {c.value for c in admin.capabilities} == {"manage_content", "suspend_users"}

    def test_save_unknown_principal_raises(self, store, issuer) -> None:
        """Saving a principal with no row raises NotFound."""
        ghost = replace(make_principal(store, issuer), id=999)
        with pytest.raises(NotFound):
            store.save(ghost)


class TestSlots:
    def test_slot_round_trip_and_clear(self, store, issuer, clock: FrozenClock) -> None:
        """A slot is stored, found by its value, and cleared by an empty save."""
        alice = make_principal(store, issuer)
        slot = SecretSlot(value=issuer.digest("tok"), expires_at=clock() + timedelta(hours=1))
        store.save(replace(alice, slots={SecretKind.password_reset: slot}), fields={SecretKind.password_reset})

        loaded = store.find_by_id(PrincipalKind.user, alice.id)
        assert loaded.slots == {SecretKind.password_reset: slot}
        assert store.find_by_secret(PrincipalKind.user, SecretKind.password_reset, slot.value).id == alice.id

        store.save(replace(loaded, slots={}), fields={SecretKind.password_reset})
        cleared = store.find_by_id(PrincipalKind.user, alice.id)
        assert cleared.slots == {}
        assert store.find_by_secret(PrincipalKind.user, SecretKind.password_reset, slot.value) is None

    def test_fields_limit_the_write(self, store, issuer, clock) -> None:
        """save(fields=...) leaves columns outside the list untouched."""
        alice = make_principal(store, issuer)
        otp_slot = SecretSlot(value=issuer.hash_secret("123456"), expires_at=clock() + timedelta(minutes=5))
        store.save(replace(alice, slots={SecretKind.login_otp: otp_slot}), fields={SecretKind.login_otp})

        # A stale copy without the OTP slot only writes two_factor_enabled.
        store.save(replace(alice, two_factor_enabled=True), fields={"two_factor_enabled"})
        loaded = store.find_by_id(PrincipalKind.user, alice.id)
        assert loaded.two_factor_enabled is True
        assert SecretKind.login_otp in loaded.slots

    def test_unknown_field_rejected(self, store, issuer) -> None:
        """save() rejects a field name that is not a column."""
        alice = make_principal(store, issuer)
        with pytest.raises(ValueError):
            store.save(alice, fields={"no_such_field"})

    def test_compare_and_set_wins_once(self, store, issuer, clock) -> None:
        """A conditional save succeeds once; the repeat reports the lost race."""
        alice = make_principal(store, issuer)
        slot = SecretSlot(value=issuer.digest("tok"), expires_at=clock() + timedelta(hours=1))
        store.save(replace(alice, slots={SecretKind.email_verification: slot}), fields={SecretKind.email_verification})

        consumed = replace(alice, slots={}, is_verified=True)
        fields = {SecretKind.email_verification, "is_verified"}
        assert store.save(consumed, expect=(SecretKind.email_verification, slot), fields=fields) is True
        assert store.save(consumed, expect=(SecretKind.email_verification, slot), fields=fields) is False

    def test_compare_and_set_fails_after_supersede(self, store, issuer, clock) -> None:
        """A conditional save on a superseded slot fails and keeps the newer value."""
        alice = make_principal(store, issuer)
        old = SecretSlot(value=issuer.digest("old"), expires_at=clock() + timedelta(hours=1))
        new = SecretSlot(value=issuer.digest("new"), expires_at=clock() + timedelta(hours=1))
        store.save(replace(alice, slots={SecretKind.password_reset: old}), fields={SecretKind.password_reset})
        store.save(replace(alice, slots={SecretKind.password_reset: new}), fields={SecretKind.password_reset})

        assert store.save(replace(alice, slots={}), expect=(SecretKind.password_reset, old)) is False
        assert store.find_by_id(PrincipalKind.user, alice.id).slots[SecretKind.password_reset] == new


class TestAuthorizationCodes:
    def _code(self, issuer, principal, clock, raw="code-1", client_id="rp", redirect="https://rp.example/callback"):
        now = clock()
        return AuthorizationCode(
            code_digest=issuer.digest(raw),
            client_id=client_id,
            principal_kind=principal.kind,
            principal_id=principal.id,
            redirect_uri=redirect,
            issued_at=now,
            expires_at=now + timedelta(seconds=60),
        )

    def _consume(self, store, code, clock, client_id="rp", redirect=None, kind=PrincipalKind.user):
        return store.consume_authorization_code(
            code.code_digest, client_id, redirect or code.redirect_uri, kind, clock()
        )

    def test_consume_is_single_use(self, store, issuer, clock) -> None:
        """A code is returned once, marked consumed, and never again."""
        alice = make_principal(store, issuer)
        register_client(store, issuer)
        code = self._code(issuer, alice, clock)
        store.create_authorization_code(code)

        grant = self._consume(store, code, clock)
        assert grant is not None
        assert grant.consumed is True
        assert grant.principal_id == alice.id
        assert self._consume(store, code, clock) is None

    def test_consume_checks_binding(self, store, issuer, clock) -> None:
        """Another client or redirect_uri gets None and leaves the code usable."""
        alice = make_principal(store, issuer)
        code = self._code(issuer, alice, clock)
        store.create_authorization_code(code)

        assert self._consume(store, code, clock, client_id="other") is None
        assert self._consume(store, code, clock, redirect="https://evil.example/") is None
        assert self._consume(store, code, clock) is not None

    def test_consume_checks_principal_kind(self, store, issuer, clock) -> None:
        """A user's code presented as an admin code is refused and not spent."""
        alice = make_principal(store, issuer)
        code = self._code(issuer, alice, clock)
        store.create_authorization_code(code)

        assert self._consume(store, code, clock, kind=PrincipalKind.admin) is None
        assert self._consume(store, code, clock) is not None

    def test_consume_rejects_expired(self, store, issuer, clock) -> None:
        """A code past its 60-second lifetime is refused."""
        alice = make_principal(store, issuer)
        code = self._code(issuer, alice, clock)
        store.create_authorization_code(code)
        clock.advance(seconds=61)
        assert self._consume(store, code, clock) is None

    def test_consume_rejects_at_exact_expiry(self, store, issuer, clock) -> None:
        """now == expires_at already counts as expired."""
        alice = make_principal(store, issuer)
        code = self._code(issuer, alice, clock)
        store.create_authorization_code(code)
        clock.advance(seconds=60)
        assert clock() == code.expires_at
        assert self._consume(store, code, clock) is None

    def test_consume_just_before_expiry(self, store, issuer, clock) -> None:
        """One microsecond before expires_at the code is still usable."""
        alice = make_principal(store, issuer)
        code = self._code(issuer, alice, clock)
        store.create_authorization_code(code)
        clock.advance(seconds=60, microseconds=-1)
        assert self._consume(store, code, clock) is not None

    def test_purge_removes_only_expired(self, store, issuer, clock) -> None:
        """Expired rows are deleted; a fresh code stays consumable."""
        alice = make_principal(store, issuer)
        store.create_authorization_code(self._code(issuer, alice, clock, raw="old"))
        clock.advance(seconds=120)
        fresh = self._code(issuer, alice, clock, raw="fresh")
        store.create_authorization_code(fresh)

        assert store.purge_authorization_codes(clock()) == 1
        assert self._consume(store, fresh, clock) is not None


class TestClients:
    def test_register_and_disable(self, store, issuer) -> None:
        """Clients store their redirect URIs and can be disabled."""
        client = register_client(store, issuer, redirect_uris=("https://a/cb", "https://b/cb"))
        assert client.redirect_uris == frozenset({"https://a/cb", "https://b/cb"})
        assert client.is_active is True

        assert store.set_client_active("rp", False) is True
        assert store.find_client("rp").is_active is False
        assert store.set_client_active("nope", False) is False
        assert store.find_client("nope") is None


class TestSessions:
    def test_list_newest_first(self, store, issuer, clock) -> None:
        """Sessions are listed newest first and filtered by kind."""
        alice = make_principal(store, issuer)
        for n in range(3):
            store.record_session(
                Session(
                    id=f"s{n}",
                    principal_kind=alice.kind,
                    principal_id=alice.id,
                    token_digest=f"d{n}",
                    method="password",
                    created_at=to_iso(clock()),
                    expires_at=to_iso(clock() + timedelta(hours=1)),
                    ip_address="10.0.0.1",
                )
            )
            clock.advance(seconds=1)

        rows = store.list_sessions(PrincipalKind.user, alice.id)
        assert [r.id for r in rows] == ["s2", "s1", "s0"]
        assert rows[0].ip_address == "10.0.0.1"
        assert store.list_sessions(PrincipalKind.admin, alice.id) == []
