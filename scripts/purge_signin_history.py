#!/usr/bin/env python3
"""Run one retention sweep over the identity store.

Deletes sign-in events older than SIGNIN_EVENT_MAX_AGE_DAYS, sessions whose
auth and refresh tokens have both expired, and stale email verification codes.
Meant to be run by cron or any other external scheduler.

Usage:
    python scripts/purge_signin_history.py
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge() -> dict:
    from gatehouse.logging import bind_request_context
    from gatehouse.service.runtime import get_runtime

    bind_request_context(job="retention_sweep")
    runtime = get_runtime()
    return await runtime.auth.purge_expired()


def main():
    try:
        removed = asyncio.run(purge())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    for name, count in removed.items():
        print(f"  {name}: {count} removed")


if __name__ == "__main__":
    main()
