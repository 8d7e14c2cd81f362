"""
Job queue, task handlers and worker.

The worker is imported lazily since it pulls in every service and
connector; producers only need the queue.
"""

from .queue import DSR_TASK, SCAN_TASK, JobQueue, TaskQueue, calculate_retry_delay


def __getattr__(name: str):
    if name in ("Worker", "run_worker"):
        from . import worker as _worker
        return getattr(_worker, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "DSR_TASK",
    "SCAN_TASK",
    "JobQueue",
    "TaskQueue",
    "calculate_retry_delay",
    "Worker",
    "run_worker",
]
