"""
Unified exception hierarchy for DataLens.

All exception classes live here. No per-module exception files.

Hierarchy:
    DataLensError (base)
    ├── ConnectorError
    │   ├── ConnectionFailedError
    │   ├── UnsupportedConnectorError
    │   ├── OperationNotSupportedError
    │   └── GraphAPIError
    ├── DetectionError
    ├── JobError
    ├── NotFoundError
    ├── ForbiddenError
    ├── QuotaExceededError
    └── ValidationError
        └── InvalidTransitionError

Usage:
    from datalens.exceptions import ConnectionFailedError, NotFoundError
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# ROOT
# =============================================================================


class DataLensError(Exception):
    """
    Base exception for all DataLens errors.

    Attributes:
        message: Human-readable error description
        context: Additional context about what was being done
        details: Technical details (entity names, ids, etc.)
    """

    def __init__(
        self,
        message: str,
        context: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.context = context
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.context:
            parts.append(f"Context: {self.context}")
        if self.details:
            detail_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            parts.append(f"Details: {detail_str}")
        return ". ".join(parts)


# =============================================================================
# CONNECTORS
# =============================================================================


class ConnectorError(DataLensError):
    """Raised when communication with a data source backend fails."""

    def __init__(
        self,
        message: str,
        connector_type: str | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if connector_type:
            details["connector"] = connector_type
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details, **kwargs)
        self.connector_type = connector_type
        self.operation = operation


class ConnectionFailedError(ConnectorError):
    """Backend unreachable or misconfigured. Fatal to the enclosing scan or task."""

    pass


class UnsupportedConnectorError(ConnectorError):
    """No connector is registered for the requested data source type."""

    def __init__(
        self,
        message: str,
        source_type: str | None = None,
        supported: list[str] | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if source_type:
            details["source_type"] = source_type
        if supported is not None:
            details["supported"] = supported
        super().__init__(message, operation="lookup", details=details, **kwargs)
        self.source_type = source_type
        self.supported = supported or []


class OperationNotSupportedError(ConnectorError):
    """The backend cannot perform the requested operation (e.g. delete on uploads)."""

    pass


class GraphAPIError(ConnectorError):
    """Microsoft Graph API error with response details."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: int | None = None,
        endpoint: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        if retry_after:
            details["retry_after"] = retry_after
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message, connector_type="graph_api", details=details, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after
        self.endpoint = endpoint


# =============================================================================
# DETECTION
# =============================================================================


class DetectionError(DataLensError):
    """Raised when the detection engine fails to classify a field."""

    def __init__(
        self,
        message: str,
        strategy_name: str | None = None,
        column_name: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if strategy_name:
            details["strategy"] = strategy_name
        if column_name:
            details["column"] = column_name
        super().__init__(message, details=details, **kwargs)
        self.strategy_name = strategy_name
        self.column_name = column_name


# =============================================================================
# JOBS
# =============================================================================


class JobError(DataLensError):
    """Background job processing failure."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        job_type: str | None = None,
        worker_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if job_id:
            details["job_id"] = job_id
        if job_type:
            details["job_type"] = job_type
        if worker_id:
            details["worker_id"] = worker_id
        super().__init__(message, details=details, **kwargs)
        self.job_id = job_id
        self.job_type = job_type
        self.worker_id = worker_id


# =============================================================================
# DOMAIN ERRORS
# =============================================================================


class NotFoundError(DataLensError):
    """Requested resource not found."""

    def __init__(
        self,
        message: str = "The requested resource was not found",
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, details=details, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ForbiddenError(DataLensError):
    """Resource belongs to a different tenant."""

    def __init__(
        self,
        message: str = "Access to this resource is forbidden",
        tenant_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if tenant_id:
            details["tenant_id"] = tenant_id
        super().__init__(message, details=details, **kwargs)


class QuotaExceededError(DataLensError):
    """Tenant concurrency ceiling reached; request rejected before any work."""

    def __init__(
        self,
        message: str = "Concurrent scan limit reached",
        limit: int | None = None,
        current: int | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if limit is not None:
            details["limit"] = limit
        if current is not None:
            details["current"] = current
        super().__init__(message, details=details, **kwargs)
        self.limit = limit
        self.current = current


class ValidationError(DataLensError):
    """Input validation error."""

    def __init__(
        self,
        message: str = "Request validation failed",
        field: str | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details, **kwargs)


class InvalidTransitionError(ValidationError):
    """Requested status change is not allowed from the current status."""

    def __init__(
        self,
        current: str,
        target: str,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        details["current_status"] = current
        details["requested_status"] = target
        super().__init__(
            f"Invalid status transition from {current} to {target}",
            field="status",
            details=details,
            **kwargs,
        )
        self.current = current
        self.target = target
