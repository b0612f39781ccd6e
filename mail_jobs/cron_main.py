"""CLI entrypoint that triggers the messaging cron endpoint."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from mail_jobs.errors import RemoteHttpError
from mail_jobs.http_client import CronHttpClient

DEFAULT_INTERVAL_SECONDS = 60.0


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mail-jobs-cron",
        description="Trigger the messaging cron endpoint once or on an interval.",
    )
    parser.add_argument(
        "--url",
        default=os.getenv("MAIL_JOBS_BASE_URL"),
        help="Base URL of the application (default: $MAIL_JOBS_BASE_URL)",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("CRON_SECRET_TOKEN"),
        help="Cron secret (default: $CRON_SECRET_TOKEN)",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=DEFAULT_INTERVAL_SECONDS,
        help="Delay between two ticks",
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    return parser.parse_args(argv)


async def run_cron_loop(
    client: CronHttpClient,
    interval_seconds: float,
    logger: logging.Logger,
    shutdown_event: asyncio.Event,
    once: bool = False,
) -> int:
    """
    Trigger ticks until shutdown. A failed tick is logged and the loop goes on.

    Returns the number of failed ticks.
    """
    failures = 0
    while not shutdown_event.is_set():
        try:
            summary = await client.trigger_tick()
            queue = summary.get("queue", {})
            logger.info(
                f"Cron tick: {queue.get('processed', 0)} processed, "
                f"{queue.get('failed', 0)} failed, {queue.get('retried', 0)} retried"
            )
        except RemoteHttpError as e:
            failures += 1
            logger.error(f"Cron tick failed: {e}")

        if once:
            break

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    return failures


def main(argv: Optional[list] = None):
    """Main entrypoint for the cron trigger."""
    setup_logging()
    logger = logging.getLogger(__name__)
    args = parse_args(argv)

    if not args.url:
        logger.error("Missing base URL: pass --url or set MAIL_JOBS_BASE_URL")
        sys.exit(1)

    client = CronHttpClient(args.url, token=args.token)

    async def run() -> int:
        """Async main function."""
        shutdown_event = asyncio.Event()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        logger.info(f"Starting cron loop against {args.url}...")
        return await run_cron_loop(
            client,
            args.interval_seconds,
            logger,
            shutdown_event,
            once=args.once,
        )

    try:
        failures = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    if args.once and failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
