"""
Process configuration.

Turns Settings into the list of child processes a supervisor runs and
checks the cross-field rules Settings alone cannot express.
"""

from dataclasses import dataclass
from typing import Any

from dbqueue.config import Settings, get_settings
from dbqueue.constants import ProcessKind
from dbqueue.dispatcher.main import Dispatcher
from dbqueue.errors import ConfigurationError, InconsistentConfigurationError
from dbqueue.polling.adaptive import AdaptivePollingConfig
from dbqueue.processes.base import BaseProcess
from dbqueue.scheduler.main import Scheduler
from dbqueue.scheduler.task import RecurringTaskDefinition
from dbqueue.types.process import DispatcherOptions, SchedulerOptions, WorkerOptions
from dbqueue.worker.main import Worker


@dataclass(frozen=True)
class ProcessSpec:
    """
    Everything needed to start one child process.

    A replacement for a crashed child is built from the same spec.
    """

    kind: ProcessKind
    options: WorkerOptions | DispatcherOptions | SchedulerOptions

    def instantiate(self, **kwargs: Any) -> BaseProcess:
        if self.kind == ProcessKind.WORKER:
            return Worker(self.options, **kwargs)
        if self.kind == ProcessKind.DISPATCHER:
            return Dispatcher(self.options, **kwargs)
        if self.kind == ProcessKind.SCHEDULER:
            return Scheduler(self.options, **kwargs)
        raise ConfigurationError(f"Cannot run a {self.kind.value} as a child process")


class Configuration:
    """
    Child process layout derived from settings.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @property
    def processes(self) -> list[ProcessSpec]:
        specs = []
        for options in self.settings.workers:
            specs.extend(
                ProcessSpec(ProcessKind.WORKER, options) for _ in range(options.processes)
            )
        specs.extend(
            ProcessSpec(ProcessKind.DISPATCHER, options) for options in self.settings.dispatchers
        )
        if self.settings.scheduler is not None:
            specs.append(ProcessSpec(ProcessKind.SCHEDULER, self.settings.scheduler))
        return specs

    @property
    def recurring_tasks(self) -> list[RecurringTaskDefinition]:
        return [
            RecurringTaskDefinition.from_options(key, options)
            for key, options in self.settings.recurring_tasks.items()
        ]

    def validate(self) -> "Configuration":
        """
        Check the configuration before any process starts.

        Raises:
            ConfigurationError: If no processes are configured, a recurring
                schedule is invalid or the adaptive polling settings are.
            InconsistentConfigurationError: If heartbeats are not frequent
                enough for the alive threshold.
        """
        if not self.processes:
            raise ConfigurationError("No processes configured")

        settings = self.settings
        if settings.process_heartbeat_interval_seconds >= settings.process_alive_threshold_seconds:
            raise InconsistentConfigurationError(
                f"process_heartbeat_interval_seconds ({settings.process_heartbeat_interval_seconds}) "
                f"must be less than process_alive_threshold_seconds "
                f"({settings.process_alive_threshold_seconds})"
            )

        # Parsing raises InvalidScheduleError
        self.recurring_tasks

        if settings.adaptive_polling_enabled:
            AdaptivePollingConfig.from_settings(settings).validate()
        return self
