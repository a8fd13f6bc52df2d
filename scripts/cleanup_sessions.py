#!/usr/bin/env python3
"""Delete expired session rows once and exit.

For deployments that prefer cron over the in-process sweep
(set SESSION_CLEANUP_INTERVAL_SECONDS=0 on the API).

Usage:
    DATABASE_URL=postgresql://... python scripts/cleanup_sessions.py
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def cleanup() -> int:
    from bizmarket.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.sessions.cleanup()
    finally:
        await runtime.close()


def main():
    from bizmarket.storage.errors import StoreUnavailable

    try:
        removed = asyncio.run(cleanup())
    except StoreUnavailable as e:
        print(f"Error: database unavailable during {e.operation}")
        sys.exit(1)
    print(f"Removed {removed} expired sessions")


if __name__ == "__main__":
    main()
