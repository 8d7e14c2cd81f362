"""
Fire-and-forget domain events and audit logging.

Publishing never blocks the caller and never raises: each delivery runs
on a background task tracked in a set so it is not garbage collected
mid-flight, and failures are logged. ``drain()`` waits for in-flight
deliveries (used on shutdown and in tests).

Event types:
    scan.completed, dsr.created, dsr.executing, dsr.completed, dsr.failed,
    dsr.rejected, dsr.data_accessed, dsr.data_deleted,
    dsr.manual_deletion_required
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from datalens.core.utils import utc_now

logger = logging.getLogger(__name__)

# Event type names
SCAN_COMPLETED = "scan.completed"
DSR_CREATED = "dsr.created"
DSR_EXECUTING = "dsr.executing"
DSR_COMPLETED = "dsr.completed"
DSR_FAILED = "dsr.failed"
DSR_REJECTED = "dsr.rejected"
DSR_DATA_ACCESSED = "dsr.data_accessed"
DSR_DATA_DELETED = "dsr.data_deleted"
DSR_MANUAL_DELETION_REQUIRED = "dsr.manual_deletion_required"


@dataclass
class Event:
    event_type: str
    tenant_id: UUID
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "tenant_id": str(self.tenant_id),
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


EventHandler = Callable[[Event], Awaitable[None]]


class _BackgroundTasks:
    """Tracks fire-and-forget tasks until they finish."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        """Schedule *coro* on the running loop; raises RuntimeError without one."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise
        task = loop.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        if not self._pending:
            return
        results = await asyncio.gather(*list(self._pending), return_exceptions=True)
        for r in results:
            if isinstance(r, Exception):
                logger.warning("Background delivery error during drain: %s", r)


class EventPublisher:
    """
    In-process event bus.

    Handlers are awaited one after another on a background task; one
    failing handler does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._tasks = _BackgroundTasks()

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event_type: str, tenant_id: UUID, payload: Optional[dict] = None) -> None:
        event = Event(event_type=event_type, tenant_id=tenant_id, payload=payload or {})
        logger.debug(
            f"Publishing {event_type}",
            extra={"event_type": event_type, "tenant_id": str(tenant_id)},
        )
        try:
            self._tasks.spawn(self._deliver(event), name=f"event-{event_type}")
        except RuntimeError as e:
            # No running loop (sync caller during shutdown)
            logger.warning(f"Dropped event {event_type}: {e}")

    async def _deliver(self, event: Event) -> None:
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception as e:  # Broad on purpose: a subscriber must not break delivery
                logger.error(
                    f"Event handler failed for {event.event_type}: {e}",
                    extra={"event_type": event.event_type},
                )

    async def drain(self) -> None:
        await self._tasks.drain()


class AuditLogger:
    """Best-effort asynchronous audit trail writer."""

    def __init__(self, repository: Any) -> None:
        self._repository = repository
        self._tasks = _BackgroundTasks()

    def log(
        self,
        tenant_id: UUID,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[UUID] = None,
        details: Optional[dict] = None,
    ) -> None:
        try:
            self._tasks.spawn(
                self._write(tenant_id, action, resource_type, resource_id, details),
                name=f"audit-{action}",
            )
        except RuntimeError as e:
            logger.warning(f"Dropped audit entry {action}: {e}")

    async def _write(
        self,
        tenant_id: UUID,
        action: str,
        resource_type: Optional[str],
        resource_id: Optional[UUID],
        details: Optional[dict],
    ) -> None:
        from datalens.server.models import AuditLog

        entry = AuditLog(
            tenant_id=tenant_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        )
        try:
            await self._repository.create(entry)
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                f"Failed to write audit entry {action}: {e}",
                extra={"tenant_id": str(tenant_id), "action": action},
            )

    async def drain(self) -> None:
        await self._tasks.drain()
