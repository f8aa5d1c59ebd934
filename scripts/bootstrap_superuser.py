#!/usr/bin/env python3
"""Create the first account (id 1, SUPER) on an empty identity store.

Usage:
    # Using environment variables:
    SUPERUSER_EMAIL=root@example.com SUPERUSER_PASSWORD=... python scripts/bootstrap_superuser.py

    # Or with command line args:
    python scripts/bootstrap_superuser.py --email root@example.com --full-name "Site Owner" --password ...

Environment Variables:
    SUPERUSER_EMAIL: Email for the first account
    SUPERUSER_PASSWORD: Password for the first account
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
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


async def bootstrap_superuser(
    email: str, full_name: str, name_to_use: str, password: str, dry_run: bool = False
) -> dict:
    """Create account 1 unless the store already has users.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatehouse.logging import bind_request_context
    from gatehouse.service.runtime import get_runtime

    bind_request_context(job="bootstrap_superuser")
    runtime = get_runtime()

    count = runtime.store.count_users()
    if count:
        print(f"Store already has {count} user(s); nothing to bootstrap")
        return {"user_id": None, "email": None, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create superuser: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.users.bootstrap_superuser(email, full_name, name_to_use, password)
    print(f"Created superuser: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first superuser account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPERUSER_EMAIL"),
        help="Superuser email (or set SUPERUSER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPERUSER_PASSWORD"),
        help="Superuser password (or set SUPERUSER_PASSWORD env var)",
    )
    parser.add_argument("--full-name", default="Administrator")
    parser.add_argument("--name-to-use", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPERUSER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SUPERUSER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/gatehouse-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    name_to_use = args.name_to_use or args.full_name.split()[0]
    try:
        result = asyncio.run(
            bootstrap_superuser(
                args.email, args.full_name, name_to_use, args.password, args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperuser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - the store already has its first account.")


if __name__ == "__main__":
    main()
