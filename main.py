#!/usr/bin/env python3
"""
CITSA Auth -- admin command line.

Usage:
  python main.py add-account PS/ITC/22/0120 ama.osei@ucc.edu.gh
  python main.py add-account PS/ADM/20/0001 admin@ucc.edu.gh --role admin --name "CITSA Admin"
  python main.py set-active PS/ITC/22/0120 off
  python main.py show-otps PS/ITC/22/0120
  python main.py cleanup

Serve the API with:  uvicorn asgi:app

Environment variables: see core/config.py (DATABASE_URL, JWT_*, OTP_*, ...).
"""

import argparse
import logging
import sys

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.cleanup import CleanupScheduler
from auth.models import Account
from auth.store import AccountStore, OtpStore, RefreshTokenStore, create_store_engine
from core.config import get_settings


def _cmd_add_account(args: argparse.Namespace, engine) -> int:
    accounts = AccountStore(engine)
    account = Account(
        student_id=args.student_id,
        email=args.email,
        role=args.role,
        is_active=not args.inactive,
        full_name=args.name,
        program=args.program,
        class_year=args.class_year,
    )
    try:
        user_id = accounts.create_account(account)
    except IntegrityError:
        print(f"  [!] An account for '{args.student_id}' already exists.")
        return 1
    print(f"  Created account {args.student_id} (id={user_id}, role={args.role})")
    return 0


def _cmd_set_active(args: argparse.Namespace, engine) -> int:
    active = args.state == "on"
    if not AccountStore(engine).set_active(args.student_id, active):
        print(f"  [!] No account for '{args.student_id}'.")
        return 1
    print(f"  {args.student_id} is now {'active' if active else 'inactive'}")
    return 0


def _cmd_show_otps(args: argparse.Namespace, engine) -> int:
    account = AccountStore(engine).find_by_student_id(args.student_id)
    if account is None:
        print(f"  [!] No account for '{args.student_id}'.")
        return 1
    records = OtpStore(engine).list_for_email(account.email)
    if not records:
        print("  No OTP records.")
    for r in records:
        state = "used" if r.is_used else "unused"
        print(f"  #{r.id:<6} created {r.created_at}  expires {r.expires_at}  attempts={r.attempts}  {state}")
    return 0


def _cmd_cleanup(args: argparse.Namespace, engine) -> int:
    result = CleanupScheduler(OtpStore(engine), RefreshTokenStore(engine)).run_once()
    print(f"  Removed {result.otps_deleted} expired OTP(s) and {result.tokens_deleted} expired refresh token(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="citsa-auth", description="CITSA Auth administration")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-account", help="Register a student account")
    add.add_argument("student_id")
    add.add_argument("email")
    add.add_argument("--role", default="student", choices=["student", "class_rep", "admin"])
    add.add_argument("--name", default=None, help="Full name")
    add.add_argument("--program", default=None)
    add.add_argument("--class-year", dest="class_year", default=None)
    add.add_argument("--inactive", action="store_true", help="Create the account deactivated")
    add.set_defaults(func=_cmd_add_account)

    active = sub.add_parser("set-active", help="Activate or deactivate an account")
    active.add_argument("student_id")
    active.add_argument("state", choices=["on", "off"])
    active.set_defaults(func=_cmd_set_active)

    show = sub.add_parser("show-otps", help="List OTP records for an account (hashes are not shown)")
    show.add_argument("student_id")
    show.set_defaults(func=_cmd_show_otps)

    clean = sub.add_parser("cleanup", help="Delete expired OTPs and refresh tokens once")
    clean.set_defaults(func=_cmd_cleanup)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    engine = create_store_engine(get_settings().database_url)
    try:
        return args.func(args, engine)
    except SQLAlchemyError as e:
        print(f"  [!] Database error: {e}")
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
