#!/usr/bin/env python3
"""Clear the lockout on a member account.

Usage:
    python scripts/unlock_account.py --email member@example.com

    # Or via environment variable:
    UNLOCK_EMAIL=member@example.com python scripts/unlock_account.py

Environment Variables:
    UNLOCK_EMAIL: Email of the account to unlock
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def unlock_account(email: str, dry_run: bool = False) -> dict:
    """Reset the failed-attempt counter and lockout window for ``email``.

    Returns:
        dict with account_id, email, and status ('unlocked', 'not_locked' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from memberguard.service.errors import NotFoundError
    from memberguard.service.runtime import get_runtime
    from memberguard.storage.common import normalize_email

    runtime = get_runtime()
    try:
        account = runtime.store.get_account_by_email(normalize_email(email))
        if account is None:
            raise NotFoundError("account not found", detail={"email": email})
        was_locked = runtime.lockout.is_locked_out(account)

        if dry_run:
            print(
                f"[DRY RUN] Would clear lockout for {email} "
                f"(failed attempts: {account.failed_access_count}, locked: {was_locked})"
            )
            return {"account_id": account.id, "email": email, "status": "dry_run"}

        updated = runtime.membership.unlock_account(email)
    finally:
        runtime.close()

    status = "unlocked" if was_locked else "not_locked"
    print(f"Cleared lockout for {email} (id: {updated.id})")
    return {"account_id": updated.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Clear the lockout on a BookwormsOnline member account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("UNLOCK_EMAIL"),
        help="Account email (or set UNLOCK_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or UNLOCK_EMAIL environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from memberguard.service.errors import ServiceError

    try:
        result = unlock_account(args.email, args.dry_run)
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "unlocked":
        print("\nAccount unlocked. The member can sign in again.")
    elif result["status"] == "not_locked":
        print("\nAccount was not locked; failed-attempt counter reset.")


if __name__ == "__main__":
    main()
