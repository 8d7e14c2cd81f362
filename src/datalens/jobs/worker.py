"""
Worker process for job execution.

Features:
- N concurrent polling loops over the shared job queue
- Graceful shutdown with signal handlers
- Claim, run and settle in separate transactions so long scans never
  hold a row lock
- Stuck job reclaimer for jobs abandoned by crashed workers
- Correlation id per job for log tracing
"""

import asyncio
import logging
import os
import signal
import socket
import time
from collections.abc import Sequence
from typing import Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from datalens.exceptions import (
    ConnectorError,
    DataLensError,
    JobError,
    NotFoundError,
    ValidationError,
)
from datalens.jobs.queue import JobQueue
from datalens.server.config import Settings, get_settings
from datalens.server.db import close_db, init_db
from datalens.server.logging import set_correlation_id, setup_logging
from datalens.server.metrics import record_job_processed, start_metrics_server
from datalens.server.models import JobQueue as JobQueueModel
from datalens.services import Services, build_services

logger = logging.getLogger(__name__)

RECLAIM_INTERVAL_SECONDS = 300


class Worker:
    """
    Worker that pulls scan and DSR jobs from the queue.

    Each claimed job is routed to the ``TaskQueue`` of its task type,
    which calls the subscribed handler with the queued item id.
    """

    def __init__(
        self,
        services: Services,
        concurrency: Optional[int] = None,
        task_types: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the worker.

        Args:
            services: Wired services with handlers subscribed to their queues
            concurrency: Number of polling loops (default: jobs.worker_concurrency)
            task_types: Only process these task types (default: all subscribed)
        """
        self.services = services
        self.settings: Settings = services.settings
        self.concurrency = concurrency or self.settings.jobs.worker_concurrency
        self.task_types = list(task_types or services.queues)
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"
        self.running = False
        self._session_factory = services.repos.session_factory
        self._worker_tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Run the polling loops until a shutdown signal arrives."""
        self.running = True
        logger.info(
            f"Worker {self.worker_id} started with concurrency={self.concurrency} "
            f"task_types={self.task_types}"
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown)

        self._worker_tasks = [
            asyncio.create_task(self._worker_loop(i))
            for i in range(self.concurrency)
        ]
        reclaimer_task = asyncio.create_task(self._stuck_job_reclaimer())

        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        reclaimer_task.cancel()
        await asyncio.gather(reclaimer_task, return_exceptions=True)
        logger.info(f"Worker {self.worker_id} stopped")

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal; loops exit after their current job."""
        logger.info(f"Worker {self.worker_id} shutting down...")
        self.running = False

    def _queue(self, session) -> JobQueue:
        return JobQueue(
            session,
            base_retry_delay=self.settings.jobs.retry_base_delay,
            max_retry_delay=self.settings.jobs.retry_max_delay,
        )

    async def _stuck_job_reclaimer(self) -> None:
        """
        Periodically return jobs stuck in "running" to the queue.

        Covers a worker crashing after claiming a job but before settling
        it. Also refreshes the queue depth gauges.
        """
        timeout = max(self.settings.timeouts.scan_job, self.settings.timeouts.dsr_task) * 2
        while self.running:
            try:
                async with self._session_factory() as session:
                    queue = self._queue(session)
                    reclaimed = await queue.reclaim_stuck_jobs(timeout_seconds=timeout)
                    await session.commit()
                    for task_type in self.task_types:
                        await queue.get_pending_count(task_type)
                if reclaimed:
                    logger.info(f"Reclaimed {reclaimed} stuck jobs")
            except SQLAlchemyError as e:
                logger.warning(f"Stuck job reclaimer error - jobs may remain stuck: {type(e).__name__}: {e}")

            await asyncio.sleep(RECLAIM_INTERVAL_SECONDS)

    async def _worker_loop(self, worker_num: int) -> None:
        """
        Main polling loop.

        Args:
            worker_num: Loop number for logging
        """
        worker_tag = f"{self.worker_id}:{worker_num}"

        while self.running:
            processed = False
            try:
                processed = await self.process_next(worker_tag)
            except SQLAlchemyError as e:
                logger.error(
                    f"Worker {worker_tag} database error while polling for jobs: "
                    f"{type(e).__name__}: {e}"
                )
            except OSError as e:
                logger.error(
                    f"Worker {worker_tag} OS error (network/filesystem issue): "
                    f"{type(e).__name__}: {e}"
                )
            except asyncio.CancelledError:
                logger.info(f"Worker {worker_tag} task cancelled during shutdown")
                raise

            if not processed:
                await asyncio.sleep(self.settings.timeouts.worker_poll)

    async def process_next(self, worker_tag: Optional[str] = None) -> bool:
        """
        Claim and execute one job.

        Returns:
            True if a job was processed, False if the queue was empty
        """
        worker_tag = worker_tag or self.worker_id
        async with self._session_factory() as session:
            job = await self._queue(session).dequeue(worker_tag, self.task_types)
            await session.commit()

        if job is None:
            return False

        await self._execute_job(job)
        return True

    async def _execute_job(self, job: JobQueueModel) -> None:
        """
        Execute a single claimed job and settle it.

        Validation and lookup failures are permanent and dead-letter the
        job immediately; everything else is retried with backoff.
        """
        set_correlation_id(str(job.id))
        logger.info(f"Executing job {job.id} ({job.task_type})")
        started = time.monotonic()

        try:
            task_queue = self.services.queues.get(job.task_type)
            if task_queue is None:
                raise JobError(
                    f"Unknown task type: {job.task_type}",
                    job_id=str(job.id),
                    job_type=job.task_type,
                    context="dispatching job to task handler",
                )
            result = await task_queue.dispatch(job)
            await self._settle(job, "completed", result=result, started=started)
            logger.info(f"Job {job.id} completed successfully")

        except (ValidationError, NotFoundError, JobError) as e:
            logger.error(f"Job {job.id} ({job.task_type}) failed permanently: {e}")
            await self._settle(job, "failed", error=str(e), retry=False, started=started)
        except ConnectorError as e:
            logger.error(f"Job {job.id} ({job.task_type}) connector error: {e}")
            await self._settle(job, "failed", error=str(e), started=started)
        except SQLAlchemyError as e:
            error_msg = f"Database error during {job.task_type} task: {type(e).__name__}: {e}"
            logger.error(f"Job {job.id} failed with database error: {error_msg}")
            await self._settle(job, "failed", error=error_msg, started=started)
        except asyncio.TimeoutError:
            logger.error(f"Job {job.id} ({job.task_type}) timed out")
            await self._settle(job, "failed", error="Job timed out", started=started)
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} cancelled during execution")
            await self._settle(job, "failed", error="Job cancelled during execution", started=started)
            raise
        except (DataLensError, OSError, RuntimeError) as e:
            error_msg = f"{type(e).__name__} in {job.task_type} task: {e}"
            logger.error(f"Job {job.id} failed: {error_msg}")
            await self._settle(job, "failed", error=error_msg, started=started)
        except Exception as e:  # Broad on purpose: a claimed job must never stay "running"
            error_msg = f"Unexpected {type(e).__name__} in {job.task_type} task: {e}"
            logger.exception(f"Job {job.id} failed: {error_msg}")
            await self._settle(job, "failed", error=error_msg, started=started)
        finally:
            set_correlation_id(None)

    async def _settle(
        self,
        job: JobQueueModel,
        status: str,
        result: Optional[dict] = None,
        error: Optional[str] = None,
        retry: bool = True,
        started: Optional[float] = None,
    ) -> None:
        async with self._session_factory() as session:
            queue = self._queue(session)
            if status == "completed":
                await queue.complete(job.id, result)
            else:
                rescheduled = await queue.fail(job.id, error or "", retry=retry)
                status = "retrying" if rescheduled else "failed"
            await session.commit()

        duration = time.monotonic() - started if started is not None else None
        record_job_processed(job.task_type, status, duration)


async def _run(concurrency: Optional[int], settings: Settings) -> None:
    session_factory = await init_db(settings.database.url)
    services = build_services(session_factory, settings)
    worker = Worker(services, concurrency=concurrency)
    try:
        await worker.start()
    finally:
        await services.drain()
        await close_db()


def run_worker(concurrency: Optional[int] = None) -> None:
    """
    Run the worker process.

    Args:
        concurrency: Number of concurrent polling loops
    """
    settings = get_settings()
    setup_logging(
        level=settings.logging.level,
        json_format=settings.logging.json_format,
        log_file=settings.logging.file,
    )
    if settings.metrics.enabled:
        start_metrics_server(settings.metrics.port)

    asyncio.run(_run(concurrency, settings))
