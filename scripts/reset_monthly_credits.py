#!/usr/bin/env python3
"""
Monthly Credit Reset Script

Resets every account whose last monthly reset happened before the current
calendar month (UTC). Accounts are also reset lazily on their next request;
this job keeps balances current for users who have not come back.

Run once (cron on the 1st of the month):
    python scripts/reset_monthly_credits.py

Or keep running and check hourly:
    python scripts/reset_monthly_credits.py --loop
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog  # noqa: E402

from app.db.session import close_engines, get_write_session  # noqa: E402
from app.observability.logging import setup_logging  # noqa: E402
from app.services.credits import CreditLedgerService  # noqa: E402

logger = structlog.get_logger()

CHECK_INTERVAL_SECONDS = 3600


async def reset_once() -> int:
    """Reset stale accounts and return how many were reset."""
    async with get_write_session() as session:
        ledger = CreditLedgerService(session)
        return await ledger.reset_stale_monthly_credits()


async def run_loop() -> None:
    """Run the reset check in a loop."""
    logger.info("monthly_reset_loop_started", check_interval_seconds=CHECK_INTERVAL_SECONDS)

    while True:
        try:
            await reset_once()
        except Exception as e:
            logger.error("monthly_reset_error", error=str(e), exc_info=True)

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)


async def run(loop: bool) -> None:
    try:
        if loop:
            await run_loop()
        else:
            reset = await reset_once()
            logger.info("monthly_reset_finished", accounts_reset=reset)
    finally:
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Reset monthly credit allocations")
    parser.add_argument("--loop", action="store_true", help="Keep running and check hourly")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run(args.loop))
    except KeyboardInterrupt:
        logger.info("monthly_reset_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
