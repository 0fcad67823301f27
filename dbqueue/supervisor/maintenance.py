"""
Dead process pruning and orphaned claim recovery.

Run by supervisors once at boot and then every process alive threshold.
"""

import logging
from dataclasses import dataclass

from dbqueue.db.claims import ClaimRepository
from dbqueue.db.connection import get_session_context
from dbqueue.db.processes import ProcessRepository
from dbqueue.errors import ProcessMissingError
from dbqueue.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    pruned: int = 0
    orphaned: int = 0


async def run_maintenance(
    alive_threshold_seconds: float,
    excluding_id: int | None = None,
) -> MaintenanceResult:
    """
    Prune dead processes, then fail claims left without a process.

    Pruning fails the claims of pruned workers with ProcessPrunedError.
    Claims whose process row is already gone are failed with
    ProcessMissingError.

    Args:
        alive_threshold_seconds: Heartbeat age after which a process is dead.
        excluding_id: The calling supervisor's own process ID.

    Returns:
        Counts of pruned processes and orphaned claims failed.
    """
    metrics = get_metrics()

    async with get_session_context() as session:
        pruned = await ProcessRepository(session).prune(alive_threshold_seconds, excluding_id)
    for process in pruned:
        metrics.record_process_pruned(process.kind)

    async with get_session_context() as session:
        orphaned = await ClaimRepository(session).fail_orphaned(ProcessMissingError())
    metrics.record_claims_failed("missing", orphaned)

    return MaintenanceResult(pruned=len(pruned), orphaned=orphaned)
