"""
DSR job handler.

Executes one approved DSR. A redelivered job whose DSR already left
APPROVED fails the transition check; that is acknowledged with a warning
rather than retried, since retrying can never succeed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from datalens.core.types import TaskStatus
from datalens.core.utils import parse_id
from datalens.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from datalens.services.dsr_executor import DSRExecutor

logger = logging.getLogger(__name__)


async def execute_dsr_job(executor: DSRExecutor, item_id: str) -> Optional[dict]:
    """
    Execute a DSR job.

    Args:
        executor: DSR executor
        item_id: DSR id from the job payload

    Returns:
        Result dict stored on the job
    """
    dsr_id = parse_id(item_id, "dsr_id")
    try:
        dsr = await executor.execute_dsr(dsr_id)
    except InvalidTransitionError as e:
        logger.warning(f"Skipping DSR {dsr_id}: {e.message}")
        return {"dsr_id": str(dsr_id), "skipped": True, "reason": e.message}

    result = await executor.get_execution_result(dsr.id)
    return {
        "dsr_id": str(dsr.id),
        "status": dsr.status,
        "total": result["total"],
        "failed": sum(1 for t in result["tasks"] if t["status"] == TaskStatus.FAILED.value),
    }
