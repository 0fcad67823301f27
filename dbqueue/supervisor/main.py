"""
Boot entry point.

Reads Settings, validates the process configuration and runs a
supervisor until it is told to stop.
"""

import asyncio
import logging
import sys

from dbqueue.config import get_settings
from dbqueue.configuration import Configuration
from dbqueue.db import close_db, init_db
from dbqueue.errors import ConfigurationError
from dbqueue.observability.logging import setup_logging
from dbqueue.observability.metrics import setup_metrics
from dbqueue.observability.tracing import setup_tracing
from dbqueue.supervisor.launcher import Launcher

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the supervisor asynchronously."""
    configuration = Configuration().validate()

    await init_db()
    try:
        await Launcher(
            configuration,
            max_restart_attempts=get_settings().max_restart_attempts,
        ).launch()
    finally:
        await close_db()


def run() -> None:
    """Run the supervisor."""
    setup_logging()
    setup_tracing()
    setup_metrics()

    try:
        asyncio.run(run_async())
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
