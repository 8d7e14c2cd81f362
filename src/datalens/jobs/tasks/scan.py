"""
Scan job handler.

Runs one queued ScanRun through the orchestrator. Redelivered runs that
already left PENDING are skipped by the orchestrator, so a retry after a
worker crash never scans the same run twice.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from datalens.services.scan_service import ScanOrchestrator

logger = logging.getLogger(__name__)


async def execute_scan_job(orchestrator: ScanOrchestrator, item_id: str) -> Optional[dict]:
    """
    Execute a scan job.

    Args:
        orchestrator: Scan orchestrator owning the run
        item_id: ScanRun id from the job payload

    Returns:
        Result dict stored on the job
    """
    run = await orchestrator.process_scan_job(item_id)
    if run is None:
        return {"scan_run_id": item_id, "status": "missing"}

    logger.info(f"Scan job for run {run.id} finished with status {run.status}")
    return {
        "scan_run_id": str(run.id),
        "status": run.status,
        "stats": run.stats,
    }
