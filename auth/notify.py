"""
auth/notify.py -- Hand-off point to the out-of-band delivery channel.

Mail/SMS delivery is not part of the core. The verification service calls
Notifier.deliver() with the plaintext secret exactly once, right after the
hashed/digested form has been persisted. Whatever sits behind this protocol
(an SMTP relay, a queue producer) owns retries and templates.

LogNotifier is the default wiring: it records that a delivery was requested
without ever writing the secret to the log.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Principal, SecretKind


class Notifier(Protocol):
    def deliver(self, principal: Principal, kind: SecretKind, secret: str) -> None:
        """Send `secret` to the principal. Raise on failure."""
        ...


class LogNotifier:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("credcore.notify")

    def deliver(self, principal: Principal, kind: SecretKind, secret: str) -> None:
        self._logger.info(
            "Delivery requested: %s for %s principal %s",
            kind.value,
            principal.kind.value,
            principal.id,
        )
