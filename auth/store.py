"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_principal / _row_to_client / _row_to_code / _row_to_session are the
mappers. Services and routes never touch SQL directly.

Atomicity:
  Every consume is one conditional UPDATE. save(principal, expect=(kind, slot))
  only writes when the slot still holds the value the caller read, and
  consume_authorization_code() only flips `consumed` on a row that is still
  unconsumed and unexpired. The database serializes the two UPDATEs, so of N
  concurrent confirmations at most one sees rowcount == 1. No in-process locks
  are needed, which keeps this correct with several service instances on one
  database.

Timestamps:
  Stored as ISO 8601 UTC strings with a fixed microsecond precision, so the
  string order equals the time order and expiry can be compared in SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/. Import from core/ is not needed here.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

from auth.errors import NotFound
from auth.models import (
    AuthorizationCode,
    Capability,
    Client,
    Principal,
    PrincipalKind,
    SecretKind,
    SecretSlot,
    Session,
    utcnow,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(10), nullable=False),  # "user" | "admin"
    Column("email", String(255), nullable=False),  # normalized lowercase
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("capabilities", Text, nullable=False, server_default="[]"),  # JSON array
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("email_verification_token", String(64)),
    Column("email_verification_expires", String(32)),
    Column("password_reset_token", String(64)),
    Column("password_reset_expires", String(32)),
    Column("two_factor_otp", Text),
    Column("two_factor_otp_expires", String(32)),
    Column("login_otp", Text),
    Column("login_otp_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    UniqueConstraint("kind", "email", name="uq_principal_kind_email"),
)

_clients = Table(
    "clients",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("secret_digest", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("redirect_uris", Text, nullable=False),  # JSON array
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_codes = Table(
    "authorization_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("client_id", String(64), nullable=False),
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("consumed_at", String(32)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("token_digest", String(64), nullable=False),  # SHA-256 of the bearer token
    Column("method", String(20), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

# (value column, expiry column) per secret kind.
_SLOT_COLUMNS: dict[SecretKind, tuple[str, str]] = {
    SecretKind.email_verification: ("email_verification_token", "email_verification_expires"),
    SecretKind.password_reset: ("password_reset_token", "password_reset_expires"),
    SecretKind.two_factor_otp: ("two_factor_otp", "two_factor_otp_expires"),
    SecretKind.login_otp: ("login_otp", "login_otp_expires"),
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Serialize an aware datetime as fixed-width UTC ISO 8601."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _slot_columns(kind: SecretKind):
    value_name, expires_name = _SLOT_COLUMNS[kind]
    return _principals.c[value_name], _principals.c[expires_name]


_SCALAR_FIELDS = frozenset(
    {"email", "name", "hashed_password", "role", "capabilities", "is_verified", "two_factor_enabled", "last_login"}
)


def _column_names(fields: Iterable[str]) -> list[str]:
    """Map Principal attribute names (or SecretKinds) to column names."""
    names: list[str] = []
    for name in fields:
        slot_columns = _SLOT_COLUMNS.get(name)
        if slot_columns is not None:
            names.extend(slot_columns)
        elif name in _SCALAR_FIELDS:
            names.append(name)
        else:
            raise ValueError(f"Unknown principal field: {name!r}")
    return names


def _principal_values(principal: Principal) -> dict:
    """Column values for every mutable principal field, slots included.

    Absent slots are written as NULL/NULL so a cleared slot never leaves a
    stale value or expiry behind.
    """
    values = {
        "email": normalize_email(principal.email),
        "name": principal.name,
        "hashed_password": principal.hashed_password,
        "role": principal.role,
        "capabilities": json.dumps(sorted(c.value for c in principal.capabilities)),
        "is_verified": 1 if principal.is_verified else 0,
        "two_factor_enabled": 1 if principal.two_factor_enabled else 0,
        "last_login": principal.last_login,
    }
    for kind, (value_name, expires_name) in _SLOT_COLUMNS.items():
        slot = principal.slots.get(kind)
        values[value_name] = slot.value if slot is not None else None
        values[expires_name] = to_iso(slot.expires_at) if slot is not None else None
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Principal, Client, AuthorizationCode and Session records.

    Usage:
        store = CredentialStore("sqlite:///credcore.db")
        principal = store.find_by_email(PrincipalKind.user, "a@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> int:
        """Insert a new principal and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the (kind, email) pair already
        exists. Registration lives outside the core; this is used by the
        seeding CLI and tests.
        """
        values = _principal_values(principal)
        values.update(kind=principal.kind.value, created_at=to_iso(utcnow()))
        with self.engine.connect() as conn:
            result = conn.execute(_principals.insert().values(**values))
            conn.commit()
            return result.inserted_primary_key[0]

    def find_by_email(self, kind: PrincipalKind, email: str) -> Principal | None:
        """Case-insensitive lookup. Returns None on no match so callers choose the response shape."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(
                    (_principals.c.kind == kind.value) & (_principals.c.email == normalize_email(email))
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def find_by_id(self, kind: PrincipalKind, principal_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where((_principals.c.kind == kind.value) & (_principals.c.id == principal_id))
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def find_by_secret(self, kind: PrincipalKind, secret_kind: SecretKind, value: str) -> Principal | None:
        """Resolve the principal whose pending `secret_kind` slot holds `value`.

        Only meaningful for deterministic values (HMAC digests of opaque
        tokens). Expiry is not checked here -- that is the caller's decision.
        """
        value_col, _expires_col = _slot_columns(secret_kind)
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where((_principals.c.kind == kind.value) & (value_col == value))
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def save(
        self,
        principal: Principal,
        *,
        expect: tuple[SecretKind, SecretSlot] | None = None,
        fields: Iterable[str] | None = None,
    ) -> bool:
        """Write the mutable fields of `principal` in a single UPDATE.

        `fields` limits the write to the named attributes; a SecretKind names
        that slot's value and expiry together. None writes every field. Writing
        only what changed keeps a confirm from resurrecting a slot that a
        concurrent request for a different kind has just replaced.

        Without `expect`: raises NotFound if the principal does not exist and
        returns True otherwise.

        With `expect=(kind, slot)`: compare-and-set. The row is only written
        if its `kind` slot still holds exactly `slot` (value and expiry).
        Returns False when another writer got there first -- the slot was
        consumed or superseded between the caller's read and this write.
        """
        if principal.id is None:
            raise ValueError("save() requires a persisted principal; use create_principal()")
        values = _principal_values(principal)
        if fields is not None:
            values = {name: values[name] for name in _column_names(fields)}
        stmt = _principals.update().where(
            (_principals.c.id == principal.id) & (_principals.c.kind == principal.kind.value)
        )
        if expect is not None:
            secret_kind, slot = expect
            value_col, expires_col = _slot_columns(secret_kind)
            stmt = stmt.where((value_col == slot.value) & (expires_col == to_iso(slot.expires_at)))
        with self.engine.connect() as conn:
            result = conn.execute(stmt.values(**values))
            conn.commit()
        if result.rowcount == 0 and expect is None:
            raise NotFound("Principal not found")
        return result.rowcount == 1

    def update_last_login(self, kind: PrincipalKind, principal_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given principal."""
        with self.engine.connect() as conn:
            conn.execute(
                _principals.update()
                .where((_principals.c.kind == kind.value) & (_principals.c.id == principal_id))
                .values(last_login=to_iso(utcnow()))
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, client: Client) -> int:
        """Insert a relying party. Raises IntegrityError on a duplicate client_id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _clients.insert().values(
                    client_id=client.client_id,
                    name=client.name,
                    secret_digest=client.secret_digest,
                    redirect_uris=json.dumps(sorted(client.redirect_uris)),
                    is_active=1 if client.is_active else 0,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_client(self, client_id: str) -> Client | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.client_id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    def set_client_active(self, client_id: str, is_active: bool) -> bool:
        """Enable or disable a relying party. Returns False if the client_id is unknown."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _clients.update().where(_clients.c.client_id == client_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    def create_authorization_code(self, code: AuthorizationCode) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.insert().values(
                    code_digest=code.code_digest,
                    client_id=code.client_id,
                    principal_kind=code.principal_kind.value,
                    principal_id=code.principal_id,
                    redirect_uri=code.redirect_uri,
                    issued_at=to_iso(code.issued_at),
                    expires_at=to_iso(code.expires_at),
                    consumed=0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def consume_authorization_code(
        self, code_digest: str, client_id: str, redirect_uri: str, kind: PrincipalKind, now: datetime
    ) -> AuthorizationCode | None:
        """Mark a code consumed and return it, or None if it cannot be used.

        The UPDATE's WHERE clause carries every validity condition (exists,
        unconsumed, unexpired, same client, same redirect_uri, same principal
        kind), so reading and consuming are the same statement. A failed
        attempt leaves the code untouched. Returns None for every failure
        cause alike.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _codes.update()
                .where(
                    (_codes.c.code_digest == code_digest)
                    & (_codes.c.consumed == 0)
                    & (_codes.c.client_id == client_id)
                    & (_codes.c.redirect_uri == redirect_uri)
                    & (_codes.c.principal_kind == kind.value)
                    & (_codes.c.expires_at > to_iso(now))
                )
                .values(consumed=1, consumed_at=to_iso(now))
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(_codes.select().where(_codes.c.code_digest == code_digest)).fetchone()
        return _row_to_code(row)

    def purge_authorization_codes(self, now: datetime) -> int:
        """Delete every expired code, consumed or not. Returns number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.expires_at <= to_iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions (audit trail)
    # ------------------------------------------------------------------

    def record_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    principal_kind=session.principal_kind.value,
                    principal_id=session.principal_id,
                    token_digest=session.token_digest,
                    method=session.method,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                )
            )
            conn.commit()

    def list_sessions(self, kind: PrincipalKind, principal_id: int) -> list[Session]:
        """Return the principal's session audit rows, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.principal_kind == kind.value) & (_sessions.c.principal_id == principal_id))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    slots: dict[SecretKind, SecretSlot] = {}
    for kind, (value_name, expires_name) in _SLOT_COLUMNS.items():
        value = getattr(row, value_name)
        expires = getattr(row, expires_name)
        # A half-written slot is treated as empty.
        if value is not None and expires is not None:
            slots[kind] = SecretSlot(value=value, expires_at=from_iso(expires))
    return Principal(
        id=row.id,
        kind=PrincipalKind(row.kind),
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=row.role,
        capabilities=frozenset(Capability(c) for c in json.loads(row.capabilities or "[]")),
        is_verified=bool(row.is_verified),
        two_factor_enabled=bool(row.two_factor_enabled),
        slots=slots,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_client(row) -> Client:
    return Client(
        id=row.id,
        client_id=row.client_id,
        name=row.name,
        secret_digest=row.secret_digest,
        redirect_uris=frozenset(json.loads(row.redirect_uris)),
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_code(row) -> AuthorizationCode:
    return AuthorizationCode(
        id=row.id,
        code_digest=row.code_digest,
        client_id=row.client_id,
        principal_kind=PrincipalKind(row.principal_kind),
        principal_id=row.principal_id,
        redirect_uri=row.redirect_uri,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        consumed=bool(row.consumed),
        consumed_at=from_iso(row.consumed_at) if row.consumed_at else None,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        principal_kind=PrincipalKind(row.principal_kind),
        principal_id=row.principal_id,
        token_digest=row.token_digest,
        method=row.method,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
