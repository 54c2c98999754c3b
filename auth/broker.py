"""
auth/broker.py -- OIDC-lite authorization-code broker for relying parties.

Flow:
  1. authorize(): the principal is already authenticated (session cookie).
     The broker checks the client and redirect_uri, stores a single-use code
     (as an HMAC digest) that expires after 60 seconds, and returns the
     redirect URL carrying `code` and the caller's `state` untouched.
  2. token(): the client authenticates with its secret and trades the code
     for a bearer access token with aud=client_id. Reading and consuming the
     code is one conditional UPDATE, so a code can be exchanged at most once
     even when two requests race.
  3. userinfo(): returns the public profile behind a valid access token.

Client credentials are checked before the code is touched; a request with a
wrong secret must not burn a valid code.

Not implemented: scopes, PKCE, discovery documents, refresh tokens.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from auth.errors import InvalidClient, InvalidGrant, InvalidRedirect, NotFound, Unauthorized, ValidationError
from auth.models import AuthorizationCode, Client, Principal, PrincipalKind, utcnow

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from auth.tokens import TokenIssuer
    from core.config import Settings


def public_profile(principal: Principal) -> dict:
    """The only principal fields ever shown to a relying party."""
    return {
        "id": principal.id,
        "email": principal.email,
        "name": principal.name,
        "role": principal.role,
    }


def _with_query(url: str, params: dict[str, str]) -> str:
    """Append params to url, keeping any query the registered URI already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class AuthorizationBroker:
    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        settings: Settings,
        clock: Callable = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._code_ttl = timedelta(seconds=settings.authorization_code_ttl_seconds)
        self._clock = clock
        self._logger = logger or logging.getLogger("credcore.broker")

    # ------------------------------------------------------------------
    # Authorize
    # ------------------------------------------------------------------

    def authorize(
        self,
        client_id: str,
        redirect_uri: str,
        response_type: str,
        state: str | None,
        principal: Principal,
    ) -> str:
        """Issue a code for `principal` and return the URL to redirect the browser to.

        Raises ValidationError (response_type), InvalidClient, InvalidRedirect.
        Errors are never redirected: an unregistered redirect_uri must not
        receive anything.
        """
        if response_type != "code":
            raise ValidationError("Unsupported response_type")
        client = self._active_client(client_id)
        if redirect_uri not in client.redirect_uris:
            self._logger.warning("Authorize: unregistered redirect_uri for client %s", client_id)
            raise InvalidRedirect()

        code = self._issuer.new_authorization_code()
        now = self._clock()
        self._store.create_authorization_code(
            AuthorizationCode(
                code_digest=self._issuer.digest(code),
                client_id=client.client_id,
                principal_kind=principal.kind,
                principal_id=principal.id,
                redirect_uri=redirect_uri,
                issued_at=now,
                expires_at=now + self._code_ttl,
            )
        )
        self._logger.info(
            "Authorization code issued to client %s for %s principal %s",
            client.client_id,
            principal.kind.value,
            principal.id,
        )
        params = {"code": code}
        if state is not None:
            params["state"] = state
        return _with_query(redirect_uri, params)

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def token(
        self,
        code: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        grant_type: str,
        kind: PrincipalKind,
    ) -> dict:
        """Exchange an authorization code for an access token.

        Raises:
            ValidationError: grant_type is not "authorization_code".
            InvalidClient:   unknown or inactive client, or wrong secret.
            InvalidRedirect: redirect_uri is not registered for the client.
            InvalidGrant:    code unknown, consumed, expired, issued to another
                             client or for another redirect_uri, or bound to a
                             different principal kind.
        """
        if grant_type != "authorization_code":
            raise ValidationError("Unsupported grant_type")
        if not code:
            raise InvalidGrant()
        client = self._active_client(client_id)
        if not client_secret or not self._issuer.digest_matches(client_secret, client.secret_digest):
            self._logger.warning("Token: bad client secret for client %s", client_id)
            raise InvalidClient()
        if redirect_uri not in client.redirect_uris:
            self._logger.warning("Token: unregistered redirect_uri for client %s", client_id)
            raise InvalidRedirect()

        grant = self._store.consume_authorization_code(
            self._issuer.digest(code), client.client_id, redirect_uri, kind, self._clock()
        )
        if grant is None:
            self._logger.warning(
                "Token: unusable authorization code for client %s on %s endpoint", client_id, kind.value
            )
            raise InvalidGrant()

        principal = self._store.find_by_id(grant.principal_kind, grant.principal_id)
        if principal is None:
            raise InvalidGrant()
        access_token = self._issuer.issue_bearer_token(
            principal.id,
            principal.email,
            principal.kind,
            extra_claims={"aud": client.client_id, "role": principal.role},
        )
        self._logger.info(
            "Access token issued to client %s for %s principal %s", client.client_id, kind.value, principal.id
        )
        return {
            "access_token": access_token,
            "token_type": "bearer",  # noqa: S105 -- OAuth token type, not a password
            "expires_in": self._issuer.token_ttl,
        }

    # ------------------------------------------------------------------
    # UserInfo
    # ------------------------------------------------------------------

    def userinfo(self, bearer_token: str | None, kind: PrincipalKind) -> dict:
        """Return the public profile for a valid bearer token of the given kind."""
        if not bearer_token:
            raise Unauthorized()
        payload = self._issuer.decode_bearer_token(bearer_token, kind)
        if payload is None:
            raise Unauthorized("Invalid or expired access token")
        principal = self._store.find_by_id(kind, payload["principal_id"])
        if principal is None:
            raise NotFound(f"{kind.value.capitalize()} not found")
        return public_profile(principal)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _active_client(self, client_id: str) -> Client:
        client = self._store.find_client(client_id) if client_id else None
        if client is None or not client.is_active:
            self._logger.warning("Unknown or inactive client %r", client_id)
            raise InvalidClient()
        return client
