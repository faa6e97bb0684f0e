#!/usr/bin/env python3
"""
Gatekeeper -- operator CLI for the credential lifecycle service.

Usage:
  python main.py create-admin --username root --email root@example.com
  python main.py create-admin --username root --email root@example.com --password 's3cret!'
  python main.py purge-otps
  python main.py configure-mail --company-name Acme --smtp-host smtp.acme.io --smtp-port 465
  python main.py configure-mail --show

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the datastore (default: sqlite:///gatekeeper.db)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.

The HTTP API is served separately:  uvicorn asgi:app
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from auth.errors import CredentialError
from auth.lifecycle import CredentialLifecycle
from auth.mailer import SmtpEmailTransport
from auth.store import PrincipalStore

logger = logging.getLogger("gatekeeper.cli")


def _build_lifecycle(store: PrincipalStore) -> CredentialLifecycle:
    return CredentialLifecycle(store, SmtpEmailTransport(store))


def _prompt_password() -> Optional[str]:
    """Ask for the password twice without echoing. Returns None if they differ."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def cmd_create_admin(store: PrincipalStore, args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else _prompt_password()
    if password is None:
        return 1
    try:
        admin = _build_lifecycle(store).create_admin(args.username, args.email, password)
    except CredentialError as e:
        print(f"  [!] {e.message}")
        return 1
    print(f"  Admin '{admin.username}' created (id={admin.id}).")
    return 0


def cmd_purge_otps(store: PrincipalStore, args: argparse.Namespace) -> int:
    try:
        removed = _build_lifecycle(store).purge_expired_otps()
    except CredentialError as e:
        print(f"  [!] {e.message}")
        return 1
    print(f"  Removed {removed} consumed or expired code(s).")
    return 0


_MAIL_FIELDS = ("company_name", "company_email", "smtp_host", "smtp_port", "smtp_user", "smtp_password")


def cmd_configure_mail(store: PrincipalStore, args: argparse.Namespace) -> int:
    """Update the stored mail settings. Only the flags given are changed."""
    updates = {field: getattr(args, field) for field in _MAIL_FIELDS if getattr(args, field) is not None}
    if updates:
        store.update_app_config(**updates)
        print(f"  Updated: {', '.join(sorted(updates))}")

    if args.show or not updates:
        cfg = store.get_app_config()
        for field in _MAIL_FIELDS:
            value = getattr(cfg, field)
            if field == "smtp_password" and value:
                value = "********"
            print(f"  {field:<14} {value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Operator commands for the Gatekeeper credential service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --username root --email root@example.com
  python main.py purge-otps
  python main.py configure-mail --smtp-user mailer@acme.io --smtp-password app-password
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this invocation",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an administrator account")
    p_admin.add_argument("--username", required=True)
    p_admin.add_argument("--email", required=True)
    p_admin.add_argument(
        "--password",
        default=None,
        help="Password for the new admin. Prompted for (without echo) when omitted.",
    )
    p_admin.set_defaults(func=cmd_create_admin)

    p_purge = sub.add_parser("purge-otps", help="Delete consumed and expired one-time codes")
    p_purge.set_defaults(func=cmd_purge_otps)

    p_mail = sub.add_parser("configure-mail", help="Show or update company and SMTP settings")
    p_mail.add_argument("--company-name", dest="company_name", default=None)
    p_mail.add_argument("--company-email", dest="company_email", default=None)
    p_mail.add_argument("--smtp-host", dest="smtp_host", default=None)
    p_mail.add_argument("--smtp-port", dest="smtp_port", type=int, default=None)
    p_mail.add_argument("--smtp-user", dest="smtp_user", default=None)
    p_mail.add_argument("--smtp-password", dest="smtp_password", default=None)
    p_mail.add_argument("--show", action="store_true", help="Print the stored settings after updating")
    p_mail.set_defaults(func=cmd_configure_mail)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    store = PrincipalStore(db_url=args.database_url)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
