#!/usr/bin/env python3
"""Create the first CourseGate administrator.

Sign-up only hands out the student and teacher roles; admins come from here.
Flags fall back to ADMIN_EMAIL, ADMIN_PASSWORD and ADMIN_NAME.

    python scripts/bootstrap_admin.py --email admin@school.edu --password 'Str0ngPassw0rd' --name "Registrar"

Without DATABASE_URL the account is written to the file-backed memory store
under DATA_ROOT.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

PASSWORD_MIN, PASSWORD_MAX = 8, 128

EXIT_CODES = {"created": 0, "already_admin": 0, "dry_run": 0, "role_conflict": 2}


def validate_password(password: str) -> bool:
    return PASSWORD_MIN <= len(password) <= PASSWORD_MAX


async def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create an admin account unless ``email`` is already registered.

    The result ``status`` is one of created, already_admin, role_conflict or
    dry_run; roles of existing accounts are never changed.
    """
    # config reads the environment on import, so main() must set it up first
    from coursegate.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)
    if existing is not None:
        status = "already_admin" if existing.role == "admin" else "role_conflict"
        return {"user_id": existing.id, "email": email, "status": status}
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, token, _ = await runtime.auth.register(
        email, password, name, role="admin", allow_privileged=True
    )
    return {"user_id": user.id, "email": email, "status": "created", "access_token": token}


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the first CourseGate administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument("--dry-run", action="store_true", help="report the outcome without writing")
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        parser.error("--email and --password are required (or ADMIN_EMAIL / ADMIN_PASSWORD)")
    if not validate_password(args.password):
        parser.error(f"password must be {PASSWORD_MIN} to {PASSWORD_MAX} characters")
    return args


def _prepare_environment() -> None:
    from coursegate.config import Settings

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        # same location the server reads, so it finds the account and the JWT secret
        data_root = os.environ.get("DATA_ROOT") or Settings.model_fields["data_root"].default
        print(f"note: no DATABASE_URL, using the memory store under {data_root}")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    _prepare_environment()

    email = args.email.strip().lower()
    try:
        result = asyncio.run(bootstrap_admin(email, args.password, args.name, args.dry_run))
    except Exception as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    status = result["status"]
    if status == "created":
        print(f"created admin {email} (id {result['user_id']})")
        print(f"access token: {result['access_token'][:24]}...")
    elif status == "already_admin":
        print(f"{email} is already an admin (id {result['user_id']}); nothing to do")
    elif status == "role_conflict":
        print(f"{email} exists with another role; refusing to change it", file=sys.stderr)
    else:
        print(f"dry run: would create admin {email}")
    return EXIT_CODES[status]


if __name__ == "__main__":
    sys.exit(main())
