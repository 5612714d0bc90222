#!/usr/bin/env python3
"""Deactivate sessions whose access expiry has passed.

Meant to be run periodically (cron, systemd timer, k8s CronJob).

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/reap_sessions.py

    # Repeat every N seconds instead of running once:
    python scripts/reap_sessions.py --interval 300

Environment Variables:
    JWT_SECRET: Required; shared with the API processes
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Reap the JSON-backed memory store under SHARED_FS_ROOT instead
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reap_once() -> int:
    # Import here to avoid loading config before the environment is final
    from tripauth.service.runtime import get_runtime

    runtime = get_runtime()
    return await runtime.auth.deactivate_expired_sessions()


async def reap_forever(interval: float) -> None:
    from tripauth.logging import get_logger

    logger = get_logger("reaper")
    try:
        while True:
            try:
                count = await reap_once()
                print(f"Deactivated {count} expired session(s)")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_reap_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_reaper_cancelled")


def main():
    parser = argparse.ArgumentParser(
        description="Deactivate expired auth sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Run continuously, sleeping this many seconds between sweeps",
    )
    args = parser.parse_args()

    try:
        if args.interval:
            asyncio.run(reap_forever(args.interval))
        else:
            count = asyncio.run(reap_once())
            print(f"Deactivated {count} expired session(s)")
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
