"""
DSR executor.

Turns an APPROVED data subject request into per-source actions:

1. APPROVED -> IN_PROGRESS (illegal transitions raise and change nothing)
2. Run every DSRTask with bounded concurrency; each task connects to its
   data source, targets the entities that hold classified PII and
   filters them by the subject identifiers whose keys match field names
3. Aggregate: any FAILED task fails the DSR, otherwise it is COMPLETED

A failing task never stops its siblings. MANUAL deletion-mode sources
are never connected for ERASURE; their task ends MANUAL_ACTION_REQUIRED,
which counts as success for aggregation.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import UUID

from datalens.connectors import Connector, ConnectorRegistry, call_with_timeout, close_connector
from datalens.core.types import (
    SUCCESS_TASK_STATUSES,
    DeletionMode,
    DSRStatus,
    DSRType,
    TaskStatus,
)
from datalens.core.transitions import validate_dsr_transition
from datalens.core.utils import utc_now
from datalens.exceptions import ConnectorError, ValidationError
from datalens.server.config import Settings
from datalens.server.events import (
    DSR_COMPLETED,
    DSR_DATA_ACCESSED,
    DSR_DATA_DELETED,
    DSR_FAILED,
    DSR_MANUAL_DELETION_REQUIRED,
    AuditLogger,
    EventPublisher,
)
from datalens.server.metrics import record_dsr_task
from datalens.server.models import DSR, DataSource, DSRTask, PIIClassification
from datalens.server.repositories import Repositories
from datalens.services.base import BaseService

MANUAL_DELETION_MESSAGE = "Manual deletion verification required by configuration."
CORRECTION_NOTE = "Correction capability requires connector update support"

# (result payload, final task status)
TaskOutcome = tuple[dict[str, Any], TaskStatus]


def build_entity_filters(
    classifications: list[PIIClassification],
    subject_identifiers: dict[str, Any],
) -> dict[str, dict[str, Any]]:
    """
    Map each entity to the subject filter for its classified fields.

    An identifier applies to a field when its key equals the field name,
    ignoring case. Entities with no matching field are omitted.
    """
    identifiers = {str(k).lower(): v for k, v in (subject_identifiers or {}).items()}
    filters: dict[str, dict[str, Any]] = {}
    for classification in classifications:
        value = identifiers.get(classification.field_name.lower())
        if value is None:
            continue
        filters.setdefault(classification.entity_name, {})[classification.field_name] = value
    return filters


def failed_task_count(tasks: list[DSRTask]) -> int:
    """Tasks not in a success state; a DSR with any of these is FAILED."""
    return sum(1 for t in tasks if TaskStatus(t.status) not in SUCCESS_TASK_STATUSES)


class DSRExecutor(BaseService):
    """Executes approved DSRs against every tenant data source."""

    def __init__(
        self,
        repos: Repositories,
        settings: Settings,
        registry: ConnectorRegistry,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditLogger] = None,
    ):
        super().__init__(repos, settings, events, audit)
        self._registry = registry

    async def execute_dsr(self, dsr_id: UUID) -> DSR:
        """
        Execute all tasks of an APPROVED DSR and set its final status.

        Raises:
            NotFoundError: Unknown DSR
            InvalidTransitionError: DSR is not APPROVED
        """
        dsr = await self.repos.dsrs.get_or_raise(dsr_id)
        validate_dsr_transition(dsr.status, DSRStatus.IN_PROGRESS)
        dsr.status = DSRStatus.IN_PROGRESS.value
        dsr = await self.repos.dsrs.update(dsr)

        tasks = await self.repos.dsr_tasks.list_by_dsr(dsr.id)
        self._log_info(
            f"Executing {dsr.request_type} DSR {dsr.id} with {len(tasks)} task(s)",
            tenant_id=dsr.tenant_id,
            dsr_id=str(dsr.id),
        )

        semaphore = asyncio.Semaphore(max(1, self.settings.dsr.max_concurrency))

        async def run(task: DSRTask) -> None:
            async with semaphore:
                await self._run_task(dsr, task)

        results = await asyncio.gather(*(run(t) for t in tasks), return_exceptions=True)
        for task, outcome in zip(tasks, results):
            if isinstance(outcome, BaseException):
                self._log_error(
                    f"Task {task.id} could not record its outcome: {outcome}",
                    tenant_id=dsr.tenant_id,
                    dsr_id=str(dsr.id),
                )

        tasks = await self.repos.dsr_tasks.list_by_dsr(dsr.id)
        failed = failed_task_count(tasks)
        if failed:
            validate_dsr_transition(dsr.status, DSRStatus.FAILED)
            dsr.status = DSRStatus.FAILED.value
            dsr.reason = f"{failed} task(s) failed"
            self.publish(DSR_FAILED, dsr.tenant_id, {"dsr_id": str(dsr.id), "errors": failed})
        else:
            validate_dsr_transition(dsr.status, DSRStatus.COMPLETED)
            dsr.status = DSRStatus.COMPLETED.value
            dsr.completed_at = utc_now()
            self.publish(DSR_COMPLETED, dsr.tenant_id, {"dsr_id": str(dsr.id), "tasks": len(tasks)})
        dsr = await self.repos.dsrs.update(dsr)

        self.audit(dsr.tenant_id, f"dsr.{dsr.status.lower()}", "dsr", dsr.id, {"tasks": len(tasks), "failed": failed})
        self._log_info(
            f"DSR {dsr.id} finished {dsr.status}",
            tenant_id=dsr.tenant_id,
            dsr_id=str(dsr.id),
        )
        return dsr

    async def get_execution_result(self, dsr_id: UUID) -> dict[str, Any]:
        """DSR status plus every task with its result."""
        dsr = await self.repos.dsrs.get_or_raise(dsr_id)
        tasks = await self.repos.dsr_tasks.list_by_dsr(dsr.id)
        return {
            "dsr_id": str(dsr.id),
            "status": dsr.status,
            "tasks": [
                {
                    "task_id": str(t.id),
                    "data_source_id": str(t.data_source_id),
                    "status": t.status,
                    "result": t.result,
                    "error": t.error,
                    "completed_at": t.completed_at.isoformat() if t.completed_at else None,
                }
                for t in tasks
            ],
            "total": len(tasks),
        }

    async def _run_task(self, dsr: DSR, task: DSRTask) -> None:
        task.status = TaskStatus.RUNNING.value
        task = await self.repos.dsr_tasks.update(task)

        timeout = self.settings.timeouts.dsr_task
        try:
            result, status = await asyncio.wait_for(self._dispatch(dsr, task), timeout=timeout)
        except asyncio.TimeoutError:
            self._fail(task, f"task timed out after {timeout}s")
        except Exception as e:  # Broad on purpose: one task's failure must not stop its siblings
            self._fail(task, getattr(e, "message", None) or str(e) or type(e).__name__)
            self._log_error(
                f"Task {task.id} on {task.data_source_id} failed: {task.error}",
                tenant_id=dsr.tenant_id,
                dsr_id=str(dsr.id),
            )
        else:
            task.status = status.value
            task.result = result
            task.error = None
            task.completed_at = utc_now()

        await self.repos.dsr_tasks.update(task)
        record_dsr_task(task.task_type, task.status)

    @staticmethod
    def _fail(task: DSRTask, error: str) -> None:
        task.status = TaskStatus.FAILED.value
        task.error = error
        task.completed_at = utc_now()

    async def _dispatch(self, dsr: DSR, task: DSRTask) -> TaskOutcome:
        source = await self.repos.data_sources.get_or_raise(task.data_source_id)
        task_type = task.task_type
        if task_type in (DSRType.ACCESS.value, DSRType.PORTABILITY.value):
            return await self._execute_access(dsr, source)
        if task_type == DSRType.ERASURE.value:
            return await self._execute_erasure(dsr, source)
        if task_type == DSRType.CORRECTION.value:
            return self._execute_correction(source)
        raise ValidationError(
            f"unsupported task type: {task_type}",
            field="task_type",
            reason="unsupported",
        )

    @asynccontextmanager
    async def _connected(self, source: DataSource) -> AsyncIterator[Connector]:
        connector = self._registry.create(source.type)
        try:
            await call_with_timeout(
                connector.connect(source),
                self.settings.timeouts.connector_connect,
                "connect",
                connector.connector_type,
            )
            yield connector
        finally:
            await close_connector(connector)

    async def _targets(self, dsr: DSR, source: DataSource) -> dict[str, dict[str, Any]]:
        classifications = await self.repos.classifications.list_by_data_source(source.id)
        filters = build_entity_filters(classifications, dsr.subject_identifiers)
        skipped = {c.entity_name for c in classifications} - set(filters)
        for entity_name in sorted(skipped):
            self._log_debug(
                f"No subject identifier matches fields of {entity_name}",
                tenant_id=dsr.tenant_id,
            )
        return filters

    async def _execute_access(self, dsr: DSR, source: DataSource) -> TaskOutcome:
        data: list[dict[str, Any]] = []
        errors: list[dict[str, str]] = []
        total_records = 0

        async with self._connected(source) as connector:
            for entity_name, subject_filter in (await self._targets(dsr, source)).items():
                try:
                    records = await call_with_timeout(
                        connector.export(entity_name, subject_filter),
                        self.settings.timeouts.connector_call,
                        "export",
                        connector.connector_type,
                    )
                except (ConnectorError, ValidationError) as e:
                    self._log_error(
                        f"Export of {entity_name} from {source.name} failed: {e.message}",
                        tenant_id=dsr.tenant_id,
                        dsr_id=str(dsr.id),
                    )
                    errors.append({"entity": entity_name, "error": e.message})
                    continue
                if records:
                    total_records += len(records)
                    data.append({"entity": entity_name, "records": records})

        self.publish(
            DSR_DATA_ACCESSED,
            dsr.tenant_id,
            {
                "dsr_id": str(dsr.id),
                "data_source_id": str(source.id),
                "entities_count": len(data),
                "total_records": total_records,
            },
        )
        result = {
            "data_source_id": str(source.id),
            "data_source": source.name,
            "accessed_at": utc_now().isoformat(),
            "data": data,
            "total_records": total_records,
        }
        if errors:
            result["errors"] = errors
        return result, TaskStatus.COMPLETED

    async def _execute_erasure(self, dsr: DSR, source: DataSource) -> TaskOutcome:
        if source.deletion_mode == DeletionMode.MANUAL.value:
            self._log_info(
                f"Manual deletion required for {source.name}",
                tenant_id=dsr.tenant_id,
                dsr_id=str(dsr.id),
            )
            self.publish(
                DSR_MANUAL_DELETION_REQUIRED,
                dsr.tenant_id,
                {
                    "dsr_id": str(dsr.id),
                    "data_source_id": str(source.id),
                    "reason": "Data source configured for manual deletion",
                },
            )
            return (
                {"status": TaskStatus.MANUAL_ACTION_REQUIRED.value, "message": MANUAL_DELETION_MESSAGE},
                TaskStatus.MANUAL_ACTION_REQUIRED,
            )

        deletions: list[dict[str, Any]] = []
        total_deleted = 0
        async with self._connected(source) as connector:
            targets = await self._targets(dsr, source)
            for entity_name, subject_filter in targets.items():
                try:
                    count = await call_with_timeout(
                        connector.delete(entity_name, subject_filter),
                        self.settings.timeouts.connector_call,
                        "delete",
                        connector.connector_type,
                    )
                except (ConnectorError, ValidationError) as e:
                    self._log_error(
                        f"Delete from {entity_name} in {source.name} failed: {e.message}",
                        tenant_id=dsr.tenant_id,
                        dsr_id=str(dsr.id),
                    )
                    deletions.append({"entity": entity_name, "status": "FAILED", "error": e.message})
                    continue
                total_deleted += count
                deletions.append(
                    {"entity": entity_name, "status": "DELETED", "count": count, "filters": subject_filter}
                )

        self.publish(
            DSR_DATA_DELETED,
            dsr.tenant_id,
            {
                "dsr_id": str(dsr.id),
                "data_source_id": str(source.id),
                "entities_count": len(targets),
                "total_deleted": total_deleted,
            },
        )
        return (
            {
                "data_source_id": str(source.id),
                "data_source": source.name,
                "deleted_at": utc_now().isoformat(),
                "deletions": deletions,
                "total_deleted": total_deleted,
            },
            TaskStatus.COMPLETED,
        )

    @staticmethod
    def _execute_correction(source: DataSource) -> TaskOutcome:
        return (
            {
                "data_source_id": str(source.id),
                "data_source": source.name,
                "corrected_at": utc_now().isoformat(),
                "note": CORRECTION_NOTE,
            },
            TaskStatus.COMPLETED,
        )
