#!/usr/bin/env python3
"""Create the first administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD='Secur3Pass!' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password 'Secur3Pass!'

Administrators can unlock locked accounts through the API. The password must
satisfy the same strength rules as registration.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    from walletauth.logging import audit_event
    from walletauth.service.auth import password_problems
    from walletauth.service.runtime import get_runtime

    problems = password_problems(password)
    if problems:
        return {"email": email, "status": "weak_password", "problems": problems}

    runtime = get_runtime()
    existing = runtime.store.find_by_email(email)
    if existing:
        status = "already_admin" if existing.is_admin else "exists_not_admin"
        return {"user_id": existing.id, "email": email, "status": status}
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    pwd_hash, algo = runtime.auth.hash_password(password)
    user = runtime.store.create_user(
        email, username, pwd_hash, role="admin", password_algo=algo
    )
    runtime.store.mark_email_verified(user.id)
    audit_event("admin_bootstrapped", user_id=user.id)
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--memory", action="store_true", help="Use the file-backed memory store")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
        sys.exit(1)
    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email.strip().lower(), args.username.strip(), args.password, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "weak_password":
        print("Error: password is missing: " + ", ".join(result["problems"]))
        sys.exit(1)
    if status == "exists_not_admin":
        print(f"Error: {args.email} already exists as a regular user")
        sys.exit(1)
    if status == "already_admin":
        print(f"{args.email} is already an administrator (id: {result['user_id']})")
    elif status == "dry_run":
        print(f"[DRY RUN] Would create administrator {args.email}")
    else:
        print(f"Created administrator {args.email} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
