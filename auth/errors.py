"""
auth/errors.py -- Error taxonomy for the credential core.

Every core operation either returns a value or raises one of these. The API
layer maps them to a status code and the standard envelope in one exception
handler (api/main.py), so route handlers never build error responses by hand.

`message` is the public, caller-safe text. Anything more specific belongs in
the log, not in the exception message returned to clients.

InvalidOrExpired covers three causes (no pending secret, expired
secret, wrong secret). Callers must never be able to tell them apart.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "server_error"
    status_code = 500
    message = "Server error"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 400
    message = "Invalid request"


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Not found"


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "Already in the requested state"


class InvalidOrExpired(AuthError):
    code = "invalid_or_expired"
    status_code = 400
    message = "Invalid or expired token"


class Unauthorized(AuthError):
    code = "unauthorized"
    status_code = 401
    message = "Authentication required"


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "Forbidden"


class InvalidClient(AuthError):
    code = "invalid_client"
    status_code = 401
    message = "Invalid client"


class InvalidRedirect(AuthError):
    code = "invalid_redirect"
    status_code = 400
    message = "Invalid redirect_uri"


class InvalidGrant(AuthError):
    code = "invalid_grant"
    status_code = 400
    message = "Invalid or expired authorization code"


class ServerError(AuthError):
    pass


class DeliveryFailed(ServerError):
    """The secret was persisted but the notifier could not hand it off."""

    code = "delivery_failed"
    status_code = 502
    message = "Could not deliver the message, please retry"
