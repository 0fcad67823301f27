"""
Supervisor running each child as a forked OS process.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass

from dbqueue.configuration import ProcessSpec
from dbqueue.constants import SupervisorState
from dbqueue.db.connection import close_db, get_session_context, reset_after_fork
from dbqueue.db.processes import ProcessRepository
from dbqueue.errors import ProcessExitError
from dbqueue.observability.logging import clear_context
from dbqueue.processes.base import BaseProcess
from dbqueue.supervisor.base import Supervisor

logger = logging.getLogger(__name__)


@dataclass
class ForkedChild:
    spec: ProcessSpec
    name: str


class ForkSupervisor(Supervisor):
    """
    Forks one OS process per configured child.

    Ended children are reaped with waitpid(WNOHANG) every tick. A child
    that crashed gets its claims failed with ProcessExitError and is
    replaced with the same configuration in the same tick.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.forks: dict[int, ForkedChild] = {}

    @property
    def mode(self) -> str:
        return "fork"

    @property
    def has_children(self) -> bool:
        return bool(self.forks)

    def start_process(self, spec: ProcessSpec) -> int:
        """
        Fork a child process for a ProcessSpec.

        Returns:
            The child's pid.
        """
        child = spec.instantiate(
            supervisor_id=self.process_id,
            supervisor_pid=os.getpid(),
            handle_signals=True,
        )

        pid = os.fork()
        if pid == 0:
            self._run_child(child)

        self.forks[pid] = ForkedChild(spec=spec, name=child.name)
        logger.info(
            f"Started {spec.kind.value}",
            extra={"pid": pid, "process_name": child.name},
        )
        return pid

    async def reap_children(self) -> None:
        for pid, status in self._reap_terminated():
            child = self.forks.pop(pid, None)
            if child is None:
                continue

            exit_code = os.waitstatus_to_exitcode(status)
            await self._handle_exit(pid, child, exit_code)

            if self.state == SupervisorState.RUNNING:
                self.start_process(child.spec)

    def terminate_gracefully(self) -> None:
        self._signal_children(signal.SIGTERM)

    def terminate_immediately(self) -> None:
        self._signal_children(signal.SIGQUIT)

    def kill_children(self) -> None:
        logger.warning(f"Killing {len(self.forks)} children that did not exit")
        self._signal_children(signal.SIGKILL)

    async def _handle_exit(self, pid: int, child: ForkedChild, exit_code: int) -> None:
        async with get_session_context() as session:
            process = await ProcessRepository(session).find_by_name(child.name)

        if exit_code == 0:
            logger.info("Child exited", extra={"pid": pid, "process_name": child.name})
        else:
            logger.warning(
                "Child exited unexpectedly",
                extra={"pid": pid, "process_name": child.name, "exit_code": exit_code},
            )

        # A child that stopped cleanly already deregistered itself
        if process is None:
            return

        if exit_code < 0:
            error = ProcessExitError(pid, signal=-exit_code)
        else:
            error = ProcessExitError(pid, exit_code=exit_code)
        await self.fail_claims_of(process.id, error)

    def _reap_terminated(self) -> list[tuple[int, int]]:
        reaped = []
        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            reaped.append((pid, status))
        return reaped

    def _signal_children(self, signum: int) -> None:
        for pid in list(self.forks):
            try:
                os.kill(pid, signum)
            except ProcessLookupError:
                pass

    def _run_child(self, child: BaseProcess) -> None:
        """Body of a forked child. Never returns."""
        exit_code = 1
        try:
            signal.set_wakeup_fd(-1)
            for signum in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT):
                signal.signal(signum, signal.SIG_DFL)
            clear_context()
            reset_after_fork()

            asyncio.run(_run_forked(child))
            exit_code = 0
        except Exception:
            logger.exception(
                f"{child.kind.value} crashed",
                extra={"process_name": child.name},
            )
        finally:
            os._exit(exit_code)


async def _run_forked(child: BaseProcess) -> None:
    try:
        await child.start()
    finally:
        await close_db()
