#!/usr/bin/env python3
"""
tokengate -- operator CLI for the auth database.

Usage:
  python main.py create-admin --email root@example.com --role super-admin
  python main.py create-user --email a@x.com --name "Ada" --role instructor
  python main.py unlock --kind user --email a@x.com
  python main.py sessions --kind admin --email root@example.com
  python main.py sessions --kind user --email a@x.com --revoke
  python main.py purge
  python main.py serve --host 127.0.0.1 --port 8000

Passwords are read with getpass unless --password is given. Settings come
from the environment / .env exactly as for the API (DATABASE_URL,
SECRET_KEY, ...).
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import PrincipalKind, Role
from auth.service import AuthService, build_auth_service
from auth.store import AuthDatabase
from core.config import get_settings

logger = logging.getLogger("tokengate.cli")


def _read_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _find(service: AuthService, kind: str, email: str):
    principal = service.directory.for_kind(kind).get_by_email(email)
    if principal is None:
        print(f"  [!] No {kind} with email '{email}'.")
        sys.exit(1)
    return principal


def cmd_create(service: AuthService, args: argparse.Namespace, kind: PrincipalKind) -> None:
    password = _read_password(args)
    if len(password) < 6:
        print("  [!] Password must be at least 6 characters.")
        sys.exit(1)
    try:
        principal = service.create_principal(kind, args.email, password, role=args.role, name=args.name)
    except IntegrityError:
        print(f"  [!] A {kind.value} with email '{args.email}' already exists.")
        sys.exit(1)
    except ValueError as exc:
        print(f"  [!] {exc}")
        sys.exit(1)
    print(f"Created {kind.value} #{principal.id} {principal.email} ({principal.role.value}).")


def cmd_unlock(service: AuthService, args: argparse.Namespace) -> None:
    principal = _find(service, args.kind, args.email)
    service.unlock(args.kind, principal.id)
    print(f"Unlocked {principal.email} (was {principal.failed_attempts} failed attempt(s)).")


def cmd_sessions(service: AuthService, args: argparse.Namespace) -> None:
    principal = _find(service, args.kind, args.email)
    if args.revoke:
        revoked = service.logout(principal)
        logger.warning("Revoked all sessions for %s %s from the CLI", args.kind, principal.email)
        print(f"Revoked {revoked} refresh token(s) for {principal.email}.")
        return
    now = service.clock.now()
    live = [t for t in principal.refresh_tokens if not t.is_expired(now)]
    print(f"{principal.email}: {len(live)} active session(s)")
    for token in live:
        print(f"  issued {token.issued_at.isoformat()}  expires {token.expires_at.isoformat()}")


def cmd_purge(service: AuthService, args: argparse.Namespace) -> None:
    counts = service.purge_expired()
    for name, count in counts.items():
        print(f"  {name}: {count} removed")


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokengate",
        description="Manage tokengate principals and sessions.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, kind in (("create-admin", PrincipalKind.admin), ("create-user", PrincipalKind.user)):
        p = sub.add_parser(name, help=f"Create a {kind.value} account")
        p.add_argument("--email", required=True)
        p.add_argument("--name", default="")
        p.add_argument(
            "--role",
            choices=[r.value for r in Role],
            default=None,
            help="Defaults to 'admin' for admins and 'student' for users",
        )
        p.add_argument("--password", help="Read interactively when omitted")
        p.set_defaults(kind=kind)

    for name, help_text in (("unlock", "Clear a lockout"), ("sessions", "List or revoke refresh tokens")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--kind", choices=[k.value for k in PrincipalKind], default="user")
        p.add_argument("--email", required=True)
        if name == "sessions":
            p.add_argument("--revoke", action="store_true", help="Revoke every refresh token")

    sub.add_parser("purge", help="Remove expired refresh tokens and rate-limit windows")

    p = sub.add_parser("serve", help="Run the API with uvicorn")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")

    if args.command == "serve":
        cmd_serve(args)
        return

    settings = get_settings()
    db = AuthDatabase(settings.database_url)
    try:
        service = build_auth_service(settings, db)
        if args.command in ("create-admin", "create-user"):
            cmd_create(service, args, args.kind)
        elif args.command == "unlock":
            cmd_unlock(service, args)
        elif args.command == "sessions":
            cmd_sessions(service, args)
        elif args.command == "purge":
            cmd_purge(service, args)
    finally:
        db.close()


if __name__ == "__main__":
    main()
