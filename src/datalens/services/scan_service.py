"""Scan run lifecycle: admission, queueing and execution."""

import asyncio
from datetime import datetime
from typing import Optional
from uuid import UUID

from datalens.core.transitions import validate_scan_transition
from datalens.core.types import ScanStatus, ScanType
from datalens.core.utils import ensure_utc, parse_id, utc_now
from datalens.exceptions import ForbiddenError, InvalidTransitionError, QuotaExceededError
from datalens.jobs.queue import TaskQueue
from datalens.server.config import Settings
from datalens.server.events import AuditLogger, EventPublisher
from datalens.server.metrics import record_scan_finished
from datalens.server.models import ScanRun
from datalens.server.repositories import Repositories
from datalens.services.base import BaseService
from datalens.services.discovery_service import DiscoveryPipeline


class ScanOrchestrator(BaseService):
    """Owns ``ScanRun`` state: PENDING -> RUNNING -> COMPLETED | FAILED."""

    def __init__(
        self,
        repos: Repositories,
        settings: Settings,
        pipeline: DiscoveryPipeline,
        queue: TaskQueue,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditLogger] = None,
    ):
        super().__init__(repos, settings, events, audit)
        self._pipeline = pipeline
        self._queue = queue

    async def enqueue_scan(
        self,
        data_source_id: UUID,
        tenant_id: UUID,
        scan_type: "ScanType | str" = ScanType.FULL,
    ) -> ScanRun:
        """
        Create a PENDING run and queue it.

        Raises:
            NotFoundError: Unknown data source
            ForbiddenError: Data source belongs to another tenant
            QuotaExceededError: Tenant already has the maximum PENDING or RUNNING scans
        """
        source = await self.repos.data_sources.get_or_raise(data_source_id)
        if source.tenant_id != tenant_id:
            raise ForbiddenError(
                "Data source belongs to another tenant",
                tenant_id=str(tenant_id),
            )

        # Count check, not a lock: two racing requests can both pass.
        # Queued runs count too, otherwise a burst of enqueues all start at once.
        limit = self.settings.scans.max_concurrent_per_tenant
        active = await self.repos.scan_runs.count_active(tenant_id)
        if active >= limit:
            self._log_warning(
                f"Scan rejected for {source.name}: {active}/{limit} scans pending or running",
                tenant_id=tenant_id,
            )
            raise QuotaExceededError(
                f"Tenant already has {active} active scans (limit {limit})",
                limit=limit,
                current=active,
            )

        run = await self.repos.scan_runs.create(
            ScanRun(
                data_source_id=source.id,
                tenant_id=tenant_id,
                type=ScanType(scan_type).value,
                status=ScanStatus.PENDING.value,
                progress=0,
            )
        )

        try:
            await self._queue.enqueue(run.id, tenant_id=tenant_id)
        except Exception as e:  # Re-raised once the run is marked FAILED
            validate_scan_transition(run.status, ScanStatus.FAILED)
            run.status = ScanStatus.FAILED.value
            run.error_message = f"failed to queue: {e}"
            run.completed_at = utc_now()
            await self.repos.scan_runs.update(run)
            self._log_error(f"Failed to queue scan run {run.id}: {e}", tenant_id=tenant_id)
            raise

        self._log_info(
            f"Queued {run.type} scan {run.id} for {source.name}",
            tenant_id=tenant_id,
            scan_run_id=str(run.id),
        )
        return run

    async def process_scan_job(self, run_id: "UUID | str") -> Optional[ScanRun]:
        """
        Execute a queued run. Redelivered runs that already left PENDING
        are skipped.
        """
        run = await self.repos.scan_runs.get(parse_id(run_id, "scan_run_id"))
        if run is None:
            self._logger.warning(f"Scan run {run_id} not found, dropping job")
            return None
        try:
            validate_scan_transition(run.status, ScanStatus.RUNNING)
        except InvalidTransitionError:
            self._log_warning(
                f"Scan run {run.id} is {run.status}, not PENDING; skipping",
                tenant_id=run.tenant_id,
            )
            return run

        run.status = ScanStatus.RUNNING.value
        run.started_at = utc_now()
        run = await self.repos.scan_runs.update(run)

        async def on_progress(percent: int) -> None:
            run.progress = percent
            await self.repos.scan_runs.update(run)

        # Everything after the RUNNING write ends in COMPLETED or FAILED
        error: Optional[str] = None
        stats = None
        timeout = self.settings.timeouts.scan_job
        try:
            changed_since = await self._changed_since(run)
            stats = await asyncio.wait_for(
                self._pipeline.scan_data_source(
                    run.data_source_id,
                    changed_since=changed_since,
                    on_progress=on_progress,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = f"scan timed out after {timeout}s"
        except Exception as e:  # Broad on purpose: any failure ends the run as FAILED
            error = getattr(e, "message", None) or str(e) or type(e).__name__
            self._log_error(
                f"Scan run {run.id} failed: {error}",
                tenant_id=run.tenant_id,
                scan_run_id=str(run.id),
            )

        completed_at = utc_now()
        duration = (completed_at - ensure_utc(run.started_at)).total_seconds()
        run.completed_at = completed_at
        final_status = ScanStatus.COMPLETED if error is None else ScanStatus.FAILED
        validate_scan_transition(run.status, final_status)
        if error is None:
            run.status = ScanStatus.COMPLETED.value
            run.progress = 100
            run.error_message = None
            run.stats = {
                **stats.to_dict(),
                "duration_seconds": duration,
                "pii_found": stats.pii_fields_count,
            }
        else:
            run.status = ScanStatus.FAILED.value
            run.error_message = error
            run.stats = {"duration_seconds": duration}
        run = await self.repos.scan_runs.update(run)

        record_scan_finished(run.status, duration)
        self.audit(
            run.tenant_id,
            f"scan.{run.status.lower()}",
            "scan_run",
            run.id,
            {"data_source_id": str(run.data_source_id), "duration_seconds": duration},
        )
        self._log_info(
            f"Scan run {run.id} {run.status} in {duration:.1f}s",
            tenant_id=run.tenant_id,
            scan_run_id=str(run.id),
        )
        return run

    async def _changed_since(self, run: ScanRun) -> Optional[datetime]:
        """Cut-off for INCREMENTAL runs; None means full discovery."""
        if run.type != ScanType.INCREMENTAL.value:
            return None
        last = await self.repos.scan_runs.get_last_completed(run.data_source_id)
        if last is None:
            self._log_info(
                f"No completed scan for {run.data_source_id}; running full discovery",
                tenant_id=run.tenant_id,
            )
            return None
        return ensure_utc(last.completed_at)

    async def get_scan_run(self, run_id: UUID) -> ScanRun:
        return await self.repos.scan_runs.get_or_raise(run_id)

    async def list_scan_runs(self, data_source_id: UUID) -> list[ScanRun]:
        return await self.repos.scan_runs.list_by_data_source(data_source_id)
