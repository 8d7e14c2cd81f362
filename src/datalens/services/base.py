"""
Base service class for DataLens.

Provides common functionality for all services:
- Repository access (one short-lived session per operation)
- Settings access
- Event publishing and audit logging
- Logging helpers that tag every line with the tenant
"""

from abc import ABC
import logging
from typing import Optional
from uuid import UUID

from datalens.server.config import Settings
from datalens.server.events import AuditLogger, EventPublisher
from datalens.server.repositories import Repositories


class BaseService(ABC):
    """
    Abstract base class for all services.

    Services are built once per process and shared by every worker
    loop, so they hold no per-request state; the tenant is passed to
    each call and carried into log lines explicitly.

    Example:
        class MyService(BaseService):
            async def rename(self, data_source_id: UUID, name: str) -> DataSource:
                source = await self.repos.data_sources.get_or_raise(data_source_id)
                source.name = name
                source = await self.repos.data_sources.update(source)
                self._log_info(f"Renamed {data_source_id}", tenant_id=source.tenant_id)
                return source
    """

    def __init__(
        self,
        repos: Repositories,
        settings: Settings,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditLogger] = None,
    ):
        """
        Initialize the base service.

        Args:
            repos: Repositories bound to the process session factory
            settings: Application settings
            events: Event publisher (a private one is created when omitted)
            audit: Audit logger (entries are skipped when omitted)
        """
        self._repos = repos
        self._settings = settings
        self._events = events or EventPublisher()
        self._audit = audit
        self._logger = logging.getLogger(self.__class__.__module__)

    @property
    def repos(self) -> Repositories:
        return self._repos

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def events(self) -> EventPublisher:
        return self._events

    def publish(self, event_type: str, tenant_id: UUID, payload: Optional[dict] = None) -> None:
        """Fire-and-forget event publication."""
        self._events.publish(event_type, tenant_id, payload)

    def audit(
        self,
        tenant_id: UUID,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[UUID] = None,
        details: Optional[dict] = None,
    ) -> None:
        """Best-effort audit entry."""
        if self._audit is not None:
            self._audit.log(tenant_id, action, resource_type, resource_id, details)

    def _log_debug(self, message: str, tenant_id: Optional[UUID] = None, **kwargs) -> None:
        """Log a debug message with context."""
        self._logger.debug(
            f"[tenant={tenant_id}] {message}",
            extra={"tenant_id": str(tenant_id), **kwargs},
        )

    def _log_info(self, message: str, tenant_id: Optional[UUID] = None, **kwargs) -> None:
        """Log an info message with context."""
        self._logger.info(
            f"[tenant={tenant_id}] {message}",
            extra={"tenant_id": str(tenant_id), **kwargs},
        )

    def _log_warning(self, message: str, tenant_id: Optional[UUID] = None, **kwargs) -> None:
        """Log a warning message with context."""
        self._logger.warning(
            f"[tenant={tenant_id}] {message}",
            extra={"tenant_id": str(tenant_id), **kwargs},
        )

    def _log_error(self, message: str, tenant_id: Optional[UUID] = None, **kwargs) -> None:
        """Log an error message with context."""
        self._logger.error(
            f"[tenant={tenant_id}] {message}",
            extra={"tenant_id": str(tenant_id), **kwargs},
        )
