#!/usr/bin/env python3
"""Lift a lockout from the command line.

Usage:
    python scripts/unlock_account.py --email alice@example.com
    python scripts/unlock_account.py --email alice@example.com --memory

Sets the account back to ``active`` and clears the failed-attempt counter,
working directly against the configured store (DATABASE_URL, or the
file-backed memory store under SHARED_FS_ROOT with --memory).
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def unlock(email: str, dry_run: bool = False) -> dict:
    # Imported late so the environment below is in place first
    from walletauth.logging import audit_event
    from walletauth.service.runtime import get_runtime
    from walletauth.storage.models import ACCOUNT_ACTIVE, ACCOUNT_DISABLED

    runtime = get_runtime()
    user = runtime.store.find_by_email(email)
    if user is None:
        return {"email": email, "status": "not_found"}
    if user.account_status == ACCOUNT_DISABLED:
        return {"user_id": user.id, "email": email, "status": "disabled"}
    if user.account_status == ACCOUNT_ACTIVE and user.failed_login_attempts == 0:
        return {"user_id": user.id, "email": email, "status": "not_locked"}
    if dry_run:
        return {"user_id": user.id, "email": email, "status": "dry_run"}

    runtime.store.set_account_status(user.id, ACCOUNT_ACTIVE)
    audit_event("account_unlocked", user_id=user.id, actor_id="cli", reason="manual")
    return {"user_id": user.id, "email": email, "status": "unlocked"}


def main():
    parser = argparse.ArgumentParser(
        description="Unlock a locked wallet account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Email of the account to unlock")
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the file-backed memory store instead of DATABASE_URL",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
    # Only the store is touched; Redis is optional here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = unlock(args.email.strip().lower(), dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "not_found":
        print(f"No account found for {args.email}")
        sys.exit(1)
    if status == "disabled":
        print(f"Account {args.email} is disabled; unlocking does not apply")
        sys.exit(1)
    if status == "not_locked":
        print(f"Account {args.email} is not locked")
    elif status == "dry_run":
        print(f"[DRY RUN] Would unlock {args.email} (id: {result['user_id']})")
    else:
        print(f"Unlocked {args.email} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
