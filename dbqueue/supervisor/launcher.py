"""
Supervisor launcher with restart backoff.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from dbqueue.configuration import Configuration
from dbqueue.constants import MAX_RESTART_DELAY_SECONDS, SupervisorMode
from dbqueue.errors import ConfigurationError
from dbqueue.supervisor.async_ import AsyncSupervisor
from dbqueue.supervisor.base import Supervisor
from dbqueue.supervisor.fork import ForkSupervisor

logger = logging.getLogger(__name__)


def build_supervisor(configuration: Configuration) -> Supervisor:
    """Create the supervisor for the configured mode."""
    if configuration.settings.supervisor_mode == SupervisorMode.ASYNC:
        return AsyncSupervisor(configuration)
    return ForkSupervisor(configuration)


def restart_delay(attempt: int) -> float:
    """Seconds to wait before restart attempt number attempt (1-based)."""
    return min(2**attempt, MAX_RESTART_DELAY_SECONDS)


class Launcher:
    """
    Starts a supervisor and restarts it if it fails to boot.

    Restarts back off exponentially, capped at MAX_RESTART_DELAY_SECONDS,
    for up to max_restart_attempts attempts (None retries forever).
    Errors after a successful boot and configuration errors are raised.
    """

    def __init__(
        self,
        configuration: Configuration,
        max_restart_attempts: int | None = None,
        factory: Callable[[Configuration], Supervisor] = build_supervisor,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.configuration = configuration
        self.max_restart_attempts = max_restart_attempts
        self._factory = factory
        self._sleep = sleep
        self.attempts = 0

    async def launch(self) -> Supervisor:
        """
        Run a supervisor until it terminates.

        Returns:
            The supervisor that ran to completion.
        """
        while True:
            supervisor = self._factory(self.configuration)
            try:
                await supervisor.start()
                return supervisor
            except ConfigurationError:
                raise
            except Exception as e:
                if supervisor.booted:
                    raise

                self.attempts += 1
                if (
                    self.max_restart_attempts is not None
                    and self.attempts > self.max_restart_attempts
                ):
                    logger.error(
                        f"Supervisor failed to boot {self.attempts} times, giving up",
                        extra={"error": str(e)},
                    )
                    raise

                delay = restart_delay(self.attempts)
                logger.warning(
                    f"Supervisor failed to boot, restarting in {delay}s",
                    extra={"attempt": self.attempts, "error": str(e)},
                )
                await self._sleep(delay)
