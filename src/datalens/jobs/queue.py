"""
Database-backed job queue with retry logic and dead letter support.

Features:
- Priority-based job ordering
- Exponential backoff for retries (2^n seconds, capped at 1 hour)
- Dead letter queue for permanently failed jobs
- Concurrent worker support via SELECT FOR UPDATE SKIP LOCKED
- TaskQueue: ``enqueue(item_id)`` / ``subscribe(handler)`` view of one
  task type, used by the scan orchestrator and the DSR service
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datalens.core.utils import ensure_utc, utc_now
from datalens.exceptions import JobError
from datalens.server.metrics import record_job_enqueued, set_queue_depth
from datalens.server.models import JobQueue as JobQueueModel

# Retry configuration
BASE_RETRY_DELAY_SECONDS = 2  # 2 seconds initial delay
MAX_RETRY_DELAY_SECONDS = 3600  # Cap at 1 hour

# Jobs running longer than this are considered stuck
DEFAULT_JOB_TIMEOUT_SECONDS = 3600

# Task types
SCAN_TASK = "scan"
DSR_TASK = "dsr"

logger = logging.getLogger(__name__)

# Handler bound to a task type; receives the queued item id
ItemHandler = Callable[[str], Awaitable[Optional[dict]]]


def calculate_retry_delay(
    retry_count: int,
    base_delay: int = BASE_RETRY_DELAY_SECONDS,
    max_delay: int = MAX_RETRY_DELAY_SECONDS,
) -> timedelta:
    """
    Calculate retry delay using exponential backoff.

    delay = min(base * 2^retry_count, max_delay)

    Example: base=2s -> 2s, 4s, 8s, 16s, 32s, ...
    """
    return timedelta(seconds=min(base_delay * (2 ** retry_count), max_delay))


class JobQueue:
    """Job queue over the ``job_queue`` table, bound to one session."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: Optional[UUID] = None,
        base_retry_delay: int = BASE_RETRY_DELAY_SECONDS,
        max_retry_delay: int = MAX_RETRY_DELAY_SECONDS,
    ):
        """
        Args:
            session: Database session
            tenant_id: Restrict to one tenant's jobs (None = all tenants)
            base_retry_delay: First retry delay in seconds
            max_retry_delay: Cap on the retry delay in seconds
        """
        self.session = session
        self.tenant_id = tenant_id
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay

    def _scope(self, *conditions):
        if self.tenant_id is not None:
            conditions = (JobQueueModel.tenant_id == self.tenant_id, *conditions)
        return and_(*conditions)

    async def enqueue(
        self,
        task_type: str,
        payload: dict,
        priority: int = 50,
        scheduled_for: Optional[datetime] = None,
        max_retries: int = 3,
    ) -> UUID:
        """
        Add a job to the queue.

        Args:
            task_type: Type of task ('scan', 'dsr')
            payload: Task-specific payload data
            priority: Priority 0-100 (higher = more urgent)
            scheduled_for: Optional time to start the job
            max_retries: Attempts before the job is dead-lettered

        Returns:
            Job ID
        """
        job = JobQueueModel(
            tenant_id=self.tenant_id,
            task_type=task_type,
            payload=payload,
            priority=priority,
            status="pending",
            scheduled_for=scheduled_for,
            retry_count=0,
            max_retries=max_retries,
        )
        self.session.add(job)
        await self.session.flush()

        record_job_enqueued(task_type)
        return job.id

    async def dequeue(
        self,
        worker_id: str,
        task_types: Optional[Sequence[str]] = None,
    ) -> Optional[JobQueueModel]:
        """
        Claim the next job for processing.

        Uses SELECT FOR UPDATE SKIP LOCKED for safe concurrent access.

        Args:
            worker_id: Identifier of the worker claiming the job
            task_types: Only claim jobs of these types

        Returns:
            Job model or None if no jobs available
        """
        now = utc_now()
        conditions = [
            JobQueueModel.status == "pending",
            (JobQueueModel.scheduled_for.is_(None)) | (JobQueueModel.scheduled_for <= now),
        ]
        if task_types:
            conditions.append(JobQueueModel.task_type.in_(list(task_types)))

        query = (
            select(JobQueueModel)
            .where(self._scope(*conditions))
            .order_by(
                JobQueueModel.priority.desc(),
                JobQueueModel.created_at.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        result = await self.session.execute(query)
        job = result.scalar_one_or_none()

        if job:
            job.status = "running"
            job.worker_id = worker_id
            job.started_at = now
            await self.session.flush()

        return job

    async def complete(self, job_id: UUID, result: Optional[dict] = None) -> None:
        """Mark a job as completed."""
        await self.session.execute(
            update(JobQueueModel)
            .where(JobQueueModel.id == job_id)
            .values(
                status="completed",
                completed_at=utc_now(),
                result=result,
            )
        )

    async def fail(self, job_id: UUID, error: str, retry: bool = True) -> bool:
        """
        Mark a job as failed, with automatic retry using exponential backoff.

        Returns:
            True if the job was rescheduled, False if it is now dead-lettered
        """
        job = await self.session.get(JobQueueModel, job_id)
        if not job:
            return False

        if retry and job.retry_count < job.max_retries:
            delay = calculate_retry_delay(
                job.retry_count, self.base_retry_delay, self.max_retry_delay
            )
            job.status = "pending"
            job.retry_count += 1
            job.worker_id = None
            job.started_at = None
            job.error = error
            job.scheduled_for = utc_now() + delay
        else:
            job.status = "failed"
            job.completed_at = utc_now()
            job.error = error

        await self.session.flush()
        return job.status == "pending"

    async def get_job(self, job_id: UUID) -> Optional[JobQueueModel]:
        """Get a job by ID."""
        return await self.session.get(JobQueueModel, job_id)

    async def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a pending or running job.

        Returns:
            True if cancelled, False if not cancellable
        """
        job = await self.session.get(JobQueueModel, job_id)
        if not job or job.status not in ("pending", "running"):
            return False

        job.status = "cancelled"
        job.completed_at = utc_now()
        await self.session.flush()
        return True

    async def _count(self, status: str, task_type: Optional[str] = None) -> int:
        conditions = [JobQueueModel.status == status]
        if task_type:
            conditions.append(JobQueueModel.task_type == task_type)
        query = select(func.count()).select_from(JobQueueModel).where(self._scope(*conditions))
        result = await self.session.execute(query)
        return result.scalar() or 0

    async def get_pending_count(self, task_type: Optional[str] = None) -> int:
        count = await self._count("pending", task_type)
        if task_type:
            set_queue_depth(task_type, "pending", count)
        return count

    async def get_running_count(self, task_type: Optional[str] = None) -> int:
        return await self._count("running", task_type)

    async def get_failed_count(self, task_type: Optional[str] = None) -> int:
        return await self._count("failed", task_type)

    # =========================================================================
    # Dead Letter Queue (DLQ) Operations
    # =========================================================================

    async def get_failed_jobs(
        self,
        task_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[JobQueueModel]:
        """Get jobs that have permanently failed (dead letter queue)."""
        conditions = [JobQueueModel.status == "failed"]
        if task_type:
            conditions.append(JobQueueModel.task_type == task_type)

        query = (
            select(JobQueueModel)
            .where(self._scope(*conditions))
            .order_by(JobQueueModel.completed_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def requeue_failed(self, job_id: UUID, reset_retries: bool = True) -> bool:
        """
        Requeue a failed job from the dead letter queue.

        Returns:
            True if requeued, False if job not found or not failed
        """
        job = await self.session.get(JobQueueModel, job_id)
        if not job or job.status != "failed":
            return False
        if self.tenant_id is not None and job.tenant_id != self.tenant_id:
            return False

        job.status = "pending"
        job.worker_id = None
        job.started_at = None
        job.completed_at = None
        job.scheduled_for = None
        job.error = None
        if reset_retries:
            job.retry_count = 0

        await self.session.flush()
        return True

    # =========================================================================
    # Stuck Job Recovery
    # =========================================================================

    async def reclaim_stuck_jobs(
        self,
        timeout_seconds: int = DEFAULT_JOB_TIMEOUT_SECONDS,
    ) -> int:
        """
        Return jobs stuck in "running" (crashed workers) to the queue.

        A reclaimed job counts as a failed attempt; once its retries are
        used up it is dead-lettered.
        """
        cutoff = utc_now() - timedelta(seconds=timeout_seconds)
        query = (
            select(JobQueueModel)
            .where(self._scope(JobQueueModel.status == "running"))
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(query)

        reclaimed = 0
        for job in result.scalars().all():
            started_at = ensure_utc(job.started_at)
            if started_at is None or started_at >= cutoff:
                continue
            job.retry_count += 1
            job.worker_id = None
            job.started_at = None
            job.error = f"Reclaimed: job was stuck (running for >{timeout_seconds}s)"
            if job.retry_count >= job.max_retries:
                job.status = "failed"
                job.completed_at = utc_now()
            else:
                job.status = "pending"
            reclaimed += 1

        if reclaimed:
            await self.session.flush()
        return reclaimed


class TaskQueue:
    """
    At-least-once queue of item ids for one task type.

    Producers call ``enqueue(item_id)``; the worker dispatches each
    claimed job to the handler registered with ``subscribe``. Handlers
    must be idempotent since a job can be redelivered after a crash or
    a retry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        task_type: str,
        priority: int = 50,
        max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self.task_type = task_type
        self.priority = priority
        self.max_retries = max_retries
        self._handler: Optional[ItemHandler] = None

    async def enqueue(self, item_id: "UUID | str", tenant_id: Optional[UUID] = None) -> UUID:
        """Queue *item_id* for processing; returns the job id."""
        async with self._session_factory() as session:
            queue = JobQueue(session, tenant_id)
            job_id = await queue.enqueue(
                self.task_type,
                {"item_id": str(item_id)},
                priority=self.priority,
                max_retries=self.max_retries,
            )
            await session.commit()
        logger.debug(f"Queued {self.task_type} item {item_id} as job {job_id}")
        return job_id

    def subscribe(self, handler: ItemHandler) -> None:
        """Register the handler that processes this queue's items."""
        if self._handler is not None:
            logger.info(f"Replacing {self.task_type} queue handler")
        self._handler = handler

    @property
    def has_subscriber(self) -> bool:
        return self._handler is not None

    async def dispatch(self, job: JobQueueModel) -> Optional[dict]:
        """Run the subscribed handler for a claimed job."""
        if self._handler is None:
            raise JobError(
                f"No handler subscribed for {self.task_type} jobs",
                job_id=str(job.id),
                job_type=self.task_type,
            )
        item_id = (job.payload or {}).get("item_id")
        if not item_id:
            raise JobError(
                "Job payload has no item_id",
                job_id=str(job.id),
                job_type=self.task_type,
            )
        return await self._handler(item_id)
