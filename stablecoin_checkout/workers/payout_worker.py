"""
Payout dispatcher background worker.

Polls the outbox for paid orders and runs their payouts, for deployments that
keep payouts out of the API process.
"""
import asyncio
import signal
from typing import Any

import structlog

from ..config import get_settings
from ..database.connection import init_db
from ..monitoring.logging import setup_logging
from ..services import build_services

logger = structlog.get_logger(__name__)


async def start_payout_worker() -> None:
    """
    Start the payout worker.

    Runs until SIGINT or SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("payout_worker_starting")

    services = build_services(settings)
    await init_db(services.engine)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payout_worker_shutdown_signal_received", signal=sig)
        services.dispatcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await services.dispatcher.start()
    except Exception as e:
        logger.error("payout_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        logger.info("payout_worker_stopped")


def main() -> None:
    asyncio.run(start_payout_worker())


if __name__ == "__main__":
    main()
