#!/usr/bin/env python3
"""CLI entry point for scheduled attribution sync.

Usage:
    # Sync every shop with a configured Admin API token
    PYTHONPATH=. python scripts/run_sync.py

    # Sync specific shops
    PYTHONPATH=. python scripts/run_sync.py --shop a.myshopify.com --shop b.myshopify.com
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.quiz_analytics.config import SyncSettings
from src.quiz_analytics.runtime import open_sync_orchestrator
from src.quiz_analytics.sync.exceptions import SyncInProgressError


logger = logging.getLogger("run_sync")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> int:
    """Main entry point. Returns process exit code."""
    parser = argparse.ArgumentParser(description="Quiz attribution sync")
    parser.add_argument(
        "--shop",
        action="append",
        help="Shop domain to sync (repeatable). Defaults to all configured shops.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    settings = SyncSettings.from_env()
    shops = args.shop or sorted(settings.shop_tokens)
    if not shops:
        logger.error("No shops to sync: pass --shop or configure Shopify tokens")
        return 2

    async with open_sync_orchestrator(settings) as orchestrator:
        # Shops are independent; one shop failing does not stop the others.
        results = await asyncio.gather(
            *(orchestrator.run_sync(shop) for shop in shops),
            return_exceptions=True,
        )

    failures = 0
    for shop, result in zip(shops, results):
        if isinstance(result, SyncInProgressError):
            logger.warning("Skipped shop=%s: %s", shop, result)
        elif isinstance(result, Exception):
            failures += 1
            logger.error("Sync failed for shop=%s: %s", shop, result)
        else:
            logger.info(
                "shop=%s: %s/%s orders attributed",
                shop,
                result.orders_attributed,
                result.orders_processed,
            )

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
