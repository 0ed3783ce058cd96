"""Standalone notification fanout worker.

Consumes the partitions assigned by EVENT_INSTANCE_INDEX / EVENT_INSTANCE_COUNT
and writes notifications, without serving HTTP. Run one process per instance
index to spread partitions across hosts:

    EVENT_INSTANCE_INDEX=0 EVENT_INSTANCE_COUNT=2 python scripts/run_fanout_worker.py
"""

import asyncio
import signal

import structlog

from clinicflow.config import get_settings
from clinicflow.container import ServiceContainer
from clinicflow.middleware.logging import configure_logging

logger = structlog.get_logger("clinicflow.worker")


async def main() -> None:
    """Run the consumer until SIGINT/SIGTERM."""
    settings = get_settings()
    configure_logging(settings)

    container = ServiceContainer(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await container.start(run_consumer=True, run_gateway=False)
    logger.info(
        "fanout_worker_started",
        consumer=settings.event_consumer_name,
        partitions=settings.owned_partitions,
    )

    await stop.wait()

    logger.info("fanout_worker_stopping")
    await container.stop()


if __name__ == "__main__":
    asyncio.run(main())
