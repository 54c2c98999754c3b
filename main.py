#!/usr/bin/env python3
"""
credcore -- Operator CLI for seeding principals and registering OIDC clients.

Registration and client management have no HTTP surface. This CLI writes
straight to the database named by DATABASE_URL.

Usage:
  python main.py create-principal --email a@x.com --name Alice --password 's3cret-pass'
  python main.py create-principal --kind admin --role "Super Admin" --email root@x.com \
      --name Root --password 's3cret-pass' --verified
  python main.py register-client --client-id shop --name "Shop" \
      --redirect-uri https://shop.example/cb --redirect-uri https://shop.example/cb2
  python main.py disable-client --client-id shop

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. Client secret digests are keyed
                with it, so it must match the key the API server runs with.
  DATABASE_URL  SQLAlchemy URL of the credential store (default: sqlite credcore.db).
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import ValidationError
from auth.models import ROLE_CAPABILITIES, USER_ROLE, Client, Principal, PrincipalKind
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings


def create_principal(args: argparse.Namespace, store: CredentialStore, issuer: TokenIssuer) -> int:
    kind = PrincipalKind(args.kind)
    if kind is PrincipalKind.admin:
        role = args.role or "Admin"
        if role not in ROLE_CAPABILITIES:
            print(f"  [!] Unknown admin role '{role}'. Choose one of: {', '.join(ROLE_CAPABILITIES)}")
            return 2
        capabilities = ROLE_CAPABILITIES[role]
    else:
        if args.role and args.role != USER_ROLE:
            print("  [!] --role only applies to admins.")
            return 2
        role = USER_ROLE
        capabilities = frozenset()

    try:
        hashed = issuer.hash_secret(args.password)
    except ValidationError as exc:
        print(f"  [!] {exc.message}")
        return 2

    principal = Principal(
        kind=kind,
        email=args.email,
        name=args.name,
        hashed_password=hashed,
        role=role,
        is_verified=args.verified,
        capabilities=capabilities,
    )
    try:
        principal_id = store.create_principal(principal)
    except IntegrityError:
        print(f"  [!] A {kind.value} with email '{args.email}' already exists.")
        return 1
    print(f"  Created {kind.value} #{principal_id} ({args.email}, role: {role}).")
    return 0


def register_client(args: argparse.Namespace, store: CredentialStore, issuer: TokenIssuer) -> int:
    secret = issuer.new_client_secret()
    client = Client(
        client_id=args.client_id,
        name=args.name,
        secret_digest=issuer.digest(secret),
        redirect_uris=frozenset(args.redirect_uri),
    )
    try:
        store.create_client(client)
    except IntegrityError:
        print(f"  [!] Client '{args.client_id}' is already registered.")
        return 1
    print(f"  Registered client '{args.client_id}' with {len(client.redirect_uris)} redirect URI(s).")
    print("  Client secret (shown once, store it now):")
    print(f"    {secret}")
    return 0


def set_client_active(args: argparse.Namespace, store: CredentialStore, active: bool) -> int:
    if not store.set_client_active(args.client_id, active):
        print(f"  [!] Unknown client '{args.client_id}'.")
        return 1
    print(f"  Client '{args.client_id}' {'enabled' if active else 'disabled'}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credcore",
        description="Seed principals and register relying parties for the credcore API.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-principal", help="Create a user or admin account")
    p.add_argument("--kind", choices=[k.value for k in PrincipalKind], default=PrincipalKind.user.value)
    p.add_argument("--email", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--password", required=True)
    p.add_argument(
        "--role",
        default=None,
        help=f"Admin role, one of: {', '.join(ROLE_CAPABILITIES)} (default: Admin)",
    )
    p.add_argument(
        "--verified",
        action="store_true",
        help="Mark the email as already verified",
    )

    c = sub.add_parser("register-client", help="Register an OIDC relying party")
    c.add_argument("--client-id", required=True)
    c.add_argument("--name", required=True)
    c.add_argument(
        "--redirect-uri",
        action="append",
        required=True,
        metavar="URI",
        help="Allowed redirect URI; repeat for several",
    )

    for name, text in (("disable-client", "Disable a relying party"), ("enable-client", "Re-enable a relying party")):
        t = sub.add_parser(name, help=text)
        t.add_argument("--client-id", required=True)

    return parser


def main(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    store = CredentialStore(settings.database_url)
    issuer = TokenIssuer(settings)
    try:
        if args.command == "create-principal":
            return create_principal(args, store, issuer)
        if args.command == "register-client":
            return register_client(args, store, issuer)
        return set_client_active(args, store, args.command == "enable-client")
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
