"""
tests/helpers.py -- Test doubles and seeding helpers shared by the test modules.

Kept out of conftest.py so test modules can import them by name.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.models import ROLE_CAPABILITIES, USER_ROLE, Client, Principal, PrincipalKind, SecretKind
from auth.store import CredentialStore
from auth.tokens import TokenIssuer

PASSWORD = "correct-horse-battery"
CLIENT_SECRET = "relying-party-secret-value"
REDIRECT_URI = "https://rp.example/callback"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Keeps every (principal, kind, secret) delivery. Set `fail` to make deliver() raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[Principal, SecretKind, str]] = []
        self.fail = False

    def deliver(self, principal: Principal, kind: SecretKind, secret: str) -> None:
        if self.fail:
            raise ConnectionError("mail relay unavailable")
        self.sent.append((principal, kind, secret))

    def last(self, kind: SecretKind) -> str:
        """Most recent secret delivered for `kind`."""
        for _principal, sent_kind, secret in reversed(self.sent):
            if sent_kind is kind:
                return secret
        raise AssertionError(f"no {kind.value} delivered")


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------


def make_principal(
    store: CredentialStore,
    issuer: TokenIssuer,
    kind: PrincipalKind = PrincipalKind.user,
    email: str = "alice@example.com",
    password: str = PASSWORD,
    verified: bool = True,
    role: str | None = None,
) -> Principal:
    """Insert a principal and return it as re-read from the store."""
    if kind is PrincipalKind.admin:
        role = role or "Admin"
        capabilities = ROLE_CAPABILITIES[role]
    else:
        role = USER_ROLE
        capabilities = frozenset()
    principal_id = store.create_principal(
        Principal(
            kind=kind,
            email=email,
            name=email.split("@")[0].capitalize(),
            hashed_password=issuer.hash_secret(password),
            role=role,
            is_verified=verified,
            capabilities=capabilities,
        )
    )
    return store.find_by_id(kind, principal_id)


def register_client(
    store: CredentialStore,
    issuer: TokenIssuer,
    client_id: str = "rp",
    redirect_uris: tuple[str, ...] = (REDIRECT_URI,),
    is_active: bool = True,
) -> Client:
    client = Client(
        client_id=client_id,
        name="Relying Party",
        secret_digest=issuer.digest(CLIENT_SECRET),
        redirect_uris=frozenset(redirect_uris),
        is_active=is_active,
    )
    store.create_client(client)
    return store.find_client(client_id)
