#!/usr/bin/env python3
"""
nestguard -- operator CLI for the admin identity subsystem.

Usage:
  python main.py check-config
  python main.py seed-catalog
  python main.py invite ops@example.com --role super_admin
  python main.py purge

Every command reads the same Settings as the API (environment / .env), so
DATABASE_URL, ADMIN_JWT_SECRET and USER_JWT_SECRET must be set (or DEBUG=true
for local development).
"""

import argparse
import logging
import sys

from pydantic import ValidationError as SettingsValidationError

from auth.authorization import DEFAULT_CATALOG
from auth.service import build_components
from auth.tokens import check_signing_config
from core.config import get_settings
from core.errors import AuthError

logger = logging.getLogger("nestguard.cli")


def _cmd_check_config(components) -> int:
    check_signing_config(components.admin_tokens, components.user_tokens)
    db_ok = components.admin_store.ping()
    print(f"  Signing keys ........ ok (admin iss={components.admin_tokens.policy.issuer})")
    print(f"  Database ............ {'ok' if db_ok else 'UNREACHABLE'}")
    return 0 if db_ok else 1


def _cmd_seed_catalog(components) -> int:
    granted = components.admin_store.seed_catalog(DEFAULT_CATALOG)
    components.authz.invalidate()
    for role in components.admin_store.list_roles():
        print(f"  {role.name:<14} {', '.join(sorted(role.permissions)) or '(no permissions)'}")
    print(f"\n  {granted} new grant(s).")
    return 0


def _cmd_invite(components, email: str, role: str) -> int:
    invitation = components.admin_auth.system_invite(email, role)
    print(f"  Invitation {invitation.id} for {invitation.email} as {invitation.role}")
    print(f"  Expires:  {invitation.expires_at.isoformat()}")
    # Shown once; only its hash is stored.
    print(f"  Token:    {invitation.raw_token}")
    return 0


def _cmd_purge(components) -> int:
    counts = components.sessions.purge_expired()
    for name, count in counts.items():
        print(f"  {name:<16} {count}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="nestguard",
        description="Operator commands for the nestguard admin identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py check-config
  python main.py seed-catalog
  python main.py invite first.admin@example.com --role super_admin
  DATABASE_URL=sqlite:///prod.db python main.py purge
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("check-config", help="Validate settings, signing keys and database reachability")
    sub.add_parser("seed-catalog", help="Create the default roles and permissions (idempotent)")
    invite = sub.add_parser("invite", help="Issue an invitation without an acting admin (bootstrap)")
    invite.add_argument("email", help="Email address to invite")
    invite.add_argument("--role", required=True, metavar="ROLE", help="Role the new account will hold")
    sub.add_parser("purge", help="Mark expired invitations/reset tokens and revoke expired sessions")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    try:
        settings = get_settings()
    except SettingsValidationError as exc:
        print(f"  [!] Invalid configuration:\n{exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    components = build_components(settings)
    try:
        if args.command == "check-config":
            return _cmd_check_config(components)
        if args.command == "seed-catalog":
            return _cmd_seed_catalog(components)
        if args.command == "invite":
            return _cmd_invite(components, args.email, args.role)
        return _cmd_purge(components)
    except AuthError as exc:
        print(f"  [!] {exc.code}: {exc.message}", file=sys.stderr)
        return 1
    finally:
        components.close()


if __name__ == "__main__":
    sys.exit(main())
