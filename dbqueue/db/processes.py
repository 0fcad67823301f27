"""
Process registry: registration, heartbeats and pruning.

The supervisor hierarchy is stored as rows; supervisees are always looked
up through supervisor_id, never held as in-memory references.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.constants import PRUNE_BATCH_SIZE, ProcessKind
from dbqueue.db.claims import ClaimRepository
from dbqueue.db.models import Process
from dbqueue.errors import ProcessPrunedError
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)


class ProcessRepository:
    """
    Repository for registered processes.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def register(
        self,
        kind: ProcessKind,
        name: str,
        pid: int,
        hostname: str | None,
        supervisor_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Process:
        """
        Register a process row.

        Args:
            kind: Worker, Dispatcher, Scheduler or Supervisor.
            name: Unique process name.
            pid: OS process ID.
            hostname: Host the process runs on.
            supervisor_id: Row ID of the supervising process.
            metadata: Kind-specific details (queues, threads, ...).

        Returns:
            The registered Process.
        """
        now = utcnow()
        process = Process(
            kind=kind.value,
            name=name,
            pid=pid,
            hostname=hostname,
            supervisor_id=supervisor_id,
            process_metadata=metadata or {},
            last_heartbeat_at=now,
            created_at=now,
        )
        self._session.add(process)
        await self._session.flush()

        logger.info(
            "Registered process",
            extra={"process_id": process.id, "kind": kind.value, "name": name, "pid": pid},
        )
        return process

    async def get(self, process_id: int) -> Process | None:
        return await self._session.get(Process, process_id)

    async def find_by_name(self, name: str) -> Process | None:
        return await self._session.scalar(select(Process).where(Process.name == name))

    async def supervisees(self, supervisor_id: int) -> Sequence[Process]:
        result = await self._session.scalars(
            select(Process).where(Process.supervisor_id == supervisor_id).order_by(Process.id)
        )
        return result.all()

    async def heartbeat(self, process_id: int) -> bool:
        """
        Touch last_heartbeat_at.

        Returns:
            False if the process row no longer exists.
        """
        result = await self._session.execute(
            update(Process)
            .where(Process.id == process_id)
            .values(last_heartbeat_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def deregister(self, process_id: int) -> bool:
        """
        Delete a process row.

        Claims still held by the process are left for orphan recovery.

        Returns:
            True if the row existed.
        """
        result = await self._session.execute(
            delete(Process)
            .where(Process.id == process_id)
            .execution_options(synchronize_session=False)
        )
        deregistered = result.rowcount > 0
        if deregistered:
            logger.info("Deregistered process", extra={"process_id": process_id})
        return deregistered

    async def deregister_supervisees(self, supervisor_id: int) -> int:
        result = await self._session.execute(
            delete(Process)
            .where(Process.supervisor_id == supervisor_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def prunable(
        self,
        alive_threshold_seconds: float,
        excluding_id: int | None = None,
        batch_size: int = PRUNE_BATCH_SIZE,
    ) -> Sequence[Process]:
        """
        Processes whose last heartbeat is older than the threshold.

        Rows locked by another pruning supervisor are skipped.
        """
        stmt = select(Process).where(
            Process.last_heartbeat_at
            <= utcnow() - timedelta(seconds=alive_threshold_seconds)
        )
        if excluding_id is not None:
            stmt = stmt.where(Process.id != excluding_id)
        stmt = stmt.order_by(Process.id).limit(batch_size).with_for_update(skip_locked=True)
        result = await self._session.scalars(stmt)
        return result.all()

    async def prune(
        self,
        alive_threshold_seconds: float,
        excluding_id: int | None = None,
    ) -> list[Process]:
        """
        Delete dead processes, failing the claims of pruned workers.

        Args:
            alive_threshold_seconds: Heartbeat age after which a process is dead.
            excluding_id: The pruning process's own ID.

        Returns:
            The pruned processes.
        """
        claims = ClaimRepository(self._session)
        pruned = list(await self.prunable(alive_threshold_seconds, excluding_id))
        for process in pruned:
            if process.kind == ProcessKind.WORKER.value:
                await claims.fail_all_claimed_by(
                    process.id, ProcessPrunedError(process.last_heartbeat_at)
                )
            await self.deregister(process.id)

        if pruned:
            logger.warning(
                f"Pruned {len(pruned)} dead processes",
                extra={"names": [process.name for process in pruned]},
            )
        return pruned
