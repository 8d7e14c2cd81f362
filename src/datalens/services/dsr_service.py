"""
DSR lifecycle service.

Handles everything around a data subject request except its execution:
intake with an SLA deadline, identity verification, approval (which fans
out one task per tenant data source and queues the request), rejection,
and post-execution verification.
"""

from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from datalens.core.types import DSRStatus, DSRType, TaskStatus
from datalens.core.transitions import validate_dsr_transition
from datalens.core.utils import utc_now
from datalens.exceptions import ValidationError
from datalens.jobs.queue import TaskQueue
from datalens.server.config import Settings
from datalens.server.events import (
    DSR_CREATED,
    DSR_EXECUTING,
    DSR_REJECTED,
    AuditLogger,
    EventPublisher,
)
from datalens.server.models import DSR, DSRTask
from datalens.server.repositories import Repositories
from datalens.services.base import BaseService


class DSRService(BaseService):
    """Intake and state changes for data subject requests."""

    def __init__(
        self,
        repos: Repositories,
        settings: Settings,
        queue: TaskQueue,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditLogger] = None,
    ):
        super().__init__(repos, settings, events, audit)
        self._queue = queue

    async def create_dsr(
        self,
        tenant_id: UUID,
        request_type: "DSRType | str",
        subject_identifiers: Optional[dict[str, Any]] = None,
        subject_name: Optional[str] = None,
        subject_email: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DSR:
        """
        Record a new PENDING request.

        The subject email, when given, doubles as an ``email`` identifier
        so requests filed with only an address still match email fields.

        Raises:
            ValidationError: Unknown request type or no way to identify the subject
        """
        try:
            dsr_type = DSRType(str(request_type).upper())
        except ValueError as e:
            raise ValidationError(
                f"Unknown request type: {request_type}",
                field="request_type",
                reason="invalid",
            ) from e

        identifiers = {k: v for k, v in (subject_identifiers or {}).items() if v not in (None, "")}
        if subject_email and "email" not in {k.lower() for k in identifiers}:
            identifiers["email"] = subject_email
        if not identifiers:
            raise ValidationError(
                "At least one subject identifier is required",
                field="subject_identifiers",
                reason="empty",
            )

        dsr = await self.repos.dsrs.create(
            DSR(
                tenant_id=tenant_id,
                request_type=dsr_type.value,
                status=DSRStatus.PENDING.value,
                subject_name=subject_name,
                subject_email=subject_email,
                subject_identifiers=identifiers,
                reason=reason,
                notes=notes,
                sla_deadline=utc_now() + timedelta(days=self.settings.dsr.sla_days),
            )
        )

        self.publish(DSR_CREATED, tenant_id, {"dsr_id": str(dsr.id), "request_type": dsr.request_type})
        self.audit(tenant_id, "dsr.created", "dsr", dsr.id, {"request_type": dsr.request_type})
        self._log_info(f"Created {dsr.request_type} DSR {dsr.id}", tenant_id=tenant_id, dsr_id=str(dsr.id))
        return dsr

    async def request_identity_verification(self, dsr_id: UUID) -> DSR:
        return await self._transition(dsr_id, DSRStatus.IDENTITY_VERIFICATION)

    async def approve_dsr(self, dsr_id: UUID) -> DSR:
        """
        Approve a request and queue it for execution.

        Creates one PENDING task per data source the tenant owns. A source
        holding nothing about the subject just yields an empty result.
        A queueing failure is logged and leaves the DSR APPROVED so it can
        be queued again.
        """
        dsr = await self.repos.dsrs.get_or_raise(dsr_id)
        validate_dsr_transition(dsr.status, DSRStatus.APPROVED)

        sources = await self.repos.data_sources.list_by_tenant(dsr.tenant_id)
        tasks = await self.repos.dsr_tasks.create_many([
            DSRTask(
                dsr_id=dsr.id,
                data_source_id=source.id,
                tenant_id=dsr.tenant_id,
                task_type=dsr.request_type,
                status=TaskStatus.PENDING.value,
            )
            for source in sources
        ])

        dsr.status = DSRStatus.APPROVED.value
        dsr = await self.repos.dsrs.update(dsr)

        self.publish(DSR_EXECUTING, dsr.tenant_id, {"dsr_id": str(dsr.id), "tasks": len(tasks)})
        self.audit(dsr.tenant_id, "dsr.approved", "dsr", dsr.id, {"tasks": len(tasks)})
        self._log_info(
            f"Approved DSR {dsr.id} with {len(tasks)} task(s)",
            tenant_id=dsr.tenant_id,
            dsr_id=str(dsr.id),
        )

        try:
            await self._queue.enqueue(dsr.id, tenant_id=dsr.tenant_id)
        except Exception as e:  # DSR stays APPROVED and can be queued again
            self._log_error(f"Failed to queue DSR {dsr.id}: {e}", tenant_id=dsr.tenant_id, dsr_id=str(dsr.id))
        return dsr

    async def reject_dsr(self, dsr_id: UUID, reason: str) -> DSR:
        dsr = await self.repos.dsrs.get_or_raise(dsr_id)
        validate_dsr_transition(dsr.status, DSRStatus.REJECTED)
        dsr.status = DSRStatus.REJECTED.value
        dsr.reason = reason
        dsr.completed_at = utc_now()
        dsr = await self.repos.dsrs.update(dsr)

        self.publish(DSR_REJECTED, dsr.tenant_id, {"dsr_id": str(dsr.id), "reason": reason})
        self.audit(dsr.tenant_id, "dsr.rejected", "dsr", dsr.id, {"reason": reason})
        self._log_info(f"Rejected DSR {dsr.id}", tenant_id=dsr.tenant_id, dsr_id=str(dsr.id))
        return dsr

    async def verify_dsr(self, dsr_id: UUID, passed: bool, notes: Optional[str] = None) -> DSR:
        """Record the post-execution check of a COMPLETED or FAILED request."""
        target = DSRStatus.VERIFIED if passed else DSRStatus.VERIFICATION_FAILED
        return await self._transition(dsr_id, target, notes=notes)

    async def get_dsr(self, dsr_id: UUID) -> DSR:
        return await self.repos.dsrs.get_or_raise(dsr_id)

    async def list_dsrs(self, tenant_id: UUID, statuses: Optional[list[str]] = None) -> list[DSR]:
        return await self.repos.dsrs.list_by_tenant(tenant_id, statuses)

    async def get_overdue(self, tenant_id: UUID) -> list[DSR]:
        """Open requests past their SLA deadline, oldest deadline first."""
        return await self.repos.dsrs.list_overdue(tenant_id)

    async def _transition(self, dsr_id: UUID, target: DSRStatus, notes: Optional[str] = None) -> DSR:
        dsr = await self.repos.dsrs.get_or_raise(dsr_id)
        validate_dsr_transition(dsr.status, target)
        previous = dsr.status
        dsr.status = target.value
        if notes:
            dsr.notes = notes
        dsr = await self.repos.dsrs.update(dsr)

        self.audit(dsr.tenant_id, f"dsr.{target.value.lower()}", "dsr", dsr.id, {"from": previous})
        self._log_info(f"DSR {dsr.id}: {previous} -> {dsr.status}", tenant_id=dsr.tenant_id, dsr_id=str(dsr.id))
        return dsr
