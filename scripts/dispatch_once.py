"""
Run a single outbound webhook dispatch pass and print the summary.

Usage:
    python scripts/dispatch_once.py
    python scripts/dispatch_once.py --batch-size 100
    python scripts/dispatch_once.py --no-lock     # skip the Redis single-flight lock
    python scripts/dispatch_once.py --tenant <uuid>
"""
import argparse
import asyncio
import json
import logging

from lendflow.services.dispatcher import WebhookDispatcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    parser = argparse.ArgumentParser(description="Run one outbound webhook dispatch pass")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    parser.add_argument("--no-lock", action="store_true")
    parser.add_argument("--tenant", default=None, help="Only dispatch this tenant's events")
    args = parser.parse_args()

    dispatcher = WebhookDispatcher(
        batch_size=args.batch_size,
        timeout=args.timeout,
        use_lock=not args.no_lock,
        tenant_id=args.tenant,
    )
    summary = await dispatcher.dispatch_pending()
    if summary.skipped:
        logger.info("Another dispatch pass is running - nothing done")
    print(json.dumps(summary.as_dict(), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
