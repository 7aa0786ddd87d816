#!/usr/bin/env python3
"""Create a password account for testing and initial setup.

Usage:
    ACCOUNT_EMAIL=ops@example.com ACCOUNT_PASSWORD='Sequence#2024' python scripts/create_account.py

    python scripts/create_account.py --email ops@example.com --password 'Sequence#2024' --username ops

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_account(
    email: str, password: str, username: Optional[str] = None, dry_run: bool = False
) -> dict:
    # Import here to avoid loading config before env vars are set
    from seqdash.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = await runtime.auth.register(email, password, username=username)
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a Random Sequence Dashboard account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ACCOUNT_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ACCOUNT_PASSWORD"))
    parser.add_argument("--username", default=os.environ.get("ACCOUNT_USERNAME"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    from seqdash.service.credentials import password_policy_violation

    problem = password_policy_violation(args.password)
    if problem:
        print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/seqdash-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            create_account(args.email, args.password, args.username, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")


if __name__ == "__main__":
    main()
