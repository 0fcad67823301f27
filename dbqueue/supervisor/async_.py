"""
Supervisor running every child as an asyncio task in its own event loop.
"""

import asyncio
import logging
from dataclasses import dataclass

from dbqueue.configuration import ProcessSpec
from dbqueue.constants import SupervisorState
from dbqueue.errors import ProcessMissingError
from dbqueue.processes.base import BaseProcess
from dbqueue.supervisor.base import Supervisor

logger = logging.getLogger(__name__)


@dataclass
class AsyncChild:
    spec: ProcessSpec
    process: BaseProcess


class AsyncSupervisor(Supervisor):
    """
    Runs children as tasks on the supervisor's event loop.

    Children are asyncio tasks rather than threads each running their own
    loop; a crashed task is recovered and replaced like a crashed thread
    would be. Job bodies still run on each worker's thread pool. Signals
    are handled by the supervisor alone.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.children: dict[asyncio.Task, AsyncChild] = {}

    @property
    def mode(self) -> str:
        return "async"

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    def start_process(self, spec: ProcessSpec) -> asyncio.Task:
        process = spec.instantiate(supervisor_id=self.process_id)
        task = asyncio.create_task(process.start(), name=process.name)
        self.children[task] = AsyncChild(spec=spec, process=process)
        logger.info(f"Started {spec.kind.value}", extra={"process_name": process.name})
        return task

    async def reap_children(self) -> None:
        for task in [task for task in self.children if task.done()]:
            child = self.children.pop(task)
            error = None if task.cancelled() else task.exception()

            if error is not None:
                logger.warning(
                    f"{child.spec.kind.value} crashed",
                    extra={"process_name": child.process.name, "error": str(error)},
                )
                if child.process.process_id is not None:
                    await self.fail_claims_of(
                        child.process.process_id,
                        ProcessMissingError(f"Process {child.process.name} crashed: {error}"),
                    )

            if self.state == SupervisorState.RUNNING:
                self.start_process(child.spec)

    def terminate_gracefully(self) -> None:
        for child in self.children.values():
            child.process.stop()

    def terminate_immediately(self) -> None:
        for task in self.children:
            task.cancel()

    async def on_shutdown(self) -> None:
        if self.children:
            self.terminate_immediately()
            await asyncio.gather(*self.children, return_exceptions=True)
            self.children.clear()
        await super().on_shutdown()
