#!/usr/bin/env python3
"""
campusgate -- authentication and authorization core of the school-management service.

Usage:
  python main.py seed                       # plans + super admin (prompts for a password)
  python main.py seed --password 'S3cret!pw'
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload

Environment variables (see core/config.py for the full list):
  DATABASE_URL        SQLAlchemy URL shared by every store
  JWT_SECRET          Signing secret, at least 32 characters (auto-generated when DEBUG=true)
  SUPER_ADMIN_EMAIL   Email of the seeded platform owner
"""

import argparse
import getpass
import sys
from typing import Optional

from api.models import PASSWORD_POLICY_MESSAGE, check_password_policy
from auth.credentials import set_password
from auth.models import Role, Subject
from auth.store import UserStore
from core.config import get_settings
from core.db import utc_now
from tenancy.store import TenancyStore


def seed(password: Optional[str]) -> int:
    """Insert the default plans and the super admin. Safe to run repeatedly."""
    settings = get_settings()
    tenancy = TenancyStore(settings.database_url)
    users = UserStore(settings.database_url)
    try:
        created_plans = tenancy.seed_plans()
        print(f"  Plans: {created_plans} created, {len(tenancy.list_plans())} total.")

        if users.email_exists(settings.super_admin_email):
            print(f"  Super admin {settings.super_admin_email} already exists, skipping.")
            return 0

        if password is None:
            password = getpass.getpass(f"Password for {settings.super_admin_email}: ")
        try:
            check_password_policy(password)
        except ValueError:
            print(f"  [!] {PASSWORD_POLICY_MESSAGE}")
            return 1

        now = utc_now()
        admin = Subject(
            email=settings.super_admin_email,
            role=Role.SUPER_ADMIN,
            first_name="Super",
            last_name="Admin",
            activated_at=now,
        )
        set_password(admin, password)
        users.create_user(admin, now=now)
        print(f"  Super admin {settings.super_admin_email} created.")
        return 0
    finally:
        tenancy.close()
        users.close()


def serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="campusgate",
        description="Authentication, authorization and token lifecycle service.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed_parser = commands.add_parser("seed", help="Create the default plans and the super admin")
    seed_parser.add_argument(
        "--password",
        default=None,
        help="Super admin password (prompted for when omitted)",
    )

    serve_parser = commands.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")

    args = parser.parse_args()
    if args.command == "seed":
        sys.exit(seed(args.password))
    if args.command == "serve":
        sys.exit(serve(args.host, args.port, args.reload))
    parser.print_help()


if __name__ == "__main__":
    main()
