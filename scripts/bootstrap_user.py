#!/usr/bin/env python3
"""Create an active user, or activate an existing one, for initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=owner@example.com BOOTSTRAP_PASSWORD='Passw0rd!' python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email owner@example.com --password 'Passw0rd!'

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(
    email: str, password: str, *, first_name: str = "", last_name: str = "", dry_run: bool = False
) -> dict:
    """Create or activate a user without the email verification round-trip.

    Returns:
        dict with user_id, email, and status
        ('created', 'activated', 'already_active' or 'dry_run')
    """
    # Imported late so the env defaults set in main() are seen by Settings
    from bizmarket.service.runtime import get_runtime

    runtime = get_runtime()
    existing = await asyncio.to_thread(runtime.store.get_user_by_email, email)

    if existing:
        if existing.is_active:
            print(f"User {email} already exists and is active (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "already_active"}
        if dry_run:
            print(f"[DRY RUN] Would activate existing user {email}")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        user = await runtime.accounts.activate(existing.id)
        print(f"Activated existing user {email} (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "activated"}

    if dry_run:
        print(f"[DRY RUN] Would create active user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.accounts.signup(
        email, password, first_name=first_name, last_name=last_name
    )
    user = await runtime.accounts.activate(result.user.id)
    print(f"Created active user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an active BizMarket user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default="")
    parser.add_argument("--last-name", default="")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("REDIS_URL", "")

    from bizmarket.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_user(
                args.email.strip().lower(),
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] in {"created", "activated"}:
        print(f"\nUser ready to log in: {result['email']} ({result['user_id']})")


if __name__ == "__main__":
    main()
