"""
auth/sessions.py -- Audit trail of bearer-token issuance.

A Session row says "this token was handed to this principal, from this
address, at this time". Nothing reads it to make an authorization decision:
bearer tokens are self-verifying JWTs. The row stores SHA-256 of the token
so an incident responder holding a token can find its row, while the table
itself cannot be replayed.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import timedelta
from typing import Callable

from auth.models import Principal, RequestMetadata, Session, utcnow
from auth.store import CredentialStore, to_iso


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        token_ttl: int,
        clock: Callable = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._token_ttl = token_ttl
        self._clock = clock
        self._logger = logger or logging.getLogger("credcore.sessions")

    def record_session(
        self,
        principal: Principal,
        bearer_token: str,
        metadata: RequestMetadata | None = None,
        method: str = "login_otp",
    ) -> Session:
        """Persist one audit row for a freshly issued bearer token.

        Called once per successful confirmation; the single-use slot consume
        that precedes it is what guarantees "once".
        """
        metadata = metadata or RequestMetadata()
        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            principal_kind=principal.kind,
            principal_id=principal.id,
            token_digest=hashlib.sha256(bearer_token.encode()).hexdigest(),
            method=method,
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=self._token_ttl)),
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
        )
        self._store.record_session(session)
        self._logger.info(
            "Session %s recorded for %s principal %s via %s",
            session.id,
            principal.kind.value,
            principal.id,
            method,
        )
        return session

    def sessions_for(self, principal: Principal) -> list[Session]:
        return self._store.list_sessions(principal.kind, principal.id)
