"""
Base connector protocol and common types.

Provides:
- DiscoveryInput / InventorySummary / DiscoveredEntity / DiscoveredField
- ConnectorCapabilities describing what a backend supports
- Connector protocol that every backend implements
- Helpers shared by implementations (filter checks, JSON-safe values,
  per-call timeouts)
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Protocol, TypeVar, runtime_checkable
from uuid import UUID

from datalens.core.types import EntityType
from datalens.exceptions import ConnectorError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# One exported record: column/key name -> JSON-safe value
Record = dict[str, Any]


@dataclass(frozen=True)
class DiscoveryInput:
    """Options for a discovery pass.

    When ``changed_since`` is set a connector may return only items
    modified after that instant. Items it cannot time-filter are
    returned regardless.
    """

    changed_since: datetime | None = None

    @property
    def is_incremental(self) -> bool:
        return self.changed_since is not None


@dataclass
class InventorySummary:
    """Backend-level totals reported by discovery."""

    total_entities: int = 0
    schema_version: str = "1.0"


@dataclass
class DiscoveredEntity:
    """A table, collection, folder or file as seen by the backend."""

    name: str
    type: EntityType
    schema: str | None = None
    row_count: int | None = None
    modified: datetime | None = None


@dataclass
class DiscoveredField:
    """A column or document key as seen by the backend."""

    name: str
    data_type: str = ""
    nullable: bool = True
    is_primary_key: bool = False
    is_foreign_key: bool = False


@dataclass(frozen=True)
class ConnectorCapabilities:
    can_discover: bool = True
    can_sample: bool = True
    can_export: bool = False
    can_delete: bool = False
    can_update: bool = False
    supports_incremental: bool = False
    max_concurrency: int = 1


@runtime_checkable
class Connector(Protocol):
    """Protocol for data source backends.

    A connector instance is used by exactly one worker for one scan or
    DSR task: ``connect`` first, ``close`` always::

        connector = registry.create(source.type)
        await connector.connect(source)
        try:
            summary, entities = await connector.discover_schema(DiscoveryInput())
        finally:
            await connector.close()
    """

    @property
    def connector_type(self) -> str:
        """Return the connector type identifier."""
        ...

    def capabilities(self) -> ConnectorCapabilities:
        ...

    async def connect(self, data_source: Any) -> None:
        """Establish and validate connectivity. Idempotent.

        Raises:
            ConnectionFailedError: Backend unreachable or misconfigured
        """
        ...

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        ...

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        ...

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        """Best-effort sample of non-null values rendered as text."""
        ...

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        """Return records matching every filter key (ACCESS / PORTABILITY)."""
        ...

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        """Delete records matching every filter key; return the count (ERASURE).

        Raises:
            ValidationError: ``filter`` is empty
        """
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# HELPERS
# =============================================================================


def require_filter(filter: Mapping[str, Any], operation: str) -> None:
    """Refuse an empty filter, which would match every record."""
    if not filter:
        raise ValidationError(
            f"Refusing to {operation} with an empty filter",
            field="filter",
            reason="empty",
        )


def to_jsonable(value: Any) -> Any:
    """Convert a backend value into something JSON can store."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return str(value)


def to_sample_text(value: Any) -> str | None:
    """Render a sampled value as text, or None for empty values."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return None
    text = value.isoformat() if isinstance(value, (datetime, date)) else str(value)
    text = text.strip()
    return text or None


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
    connector_type: str | None = None,
) -> T:
    """Await a connector call, converting a timeout into ``ConnectorError``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ConnectorError(
            f"Connector call timed out after {timeout}s",
            connector_type=connector_type,
            operation=operation,
        ) from e


async def close_connector(connector: Connector) -> None:
    """Close a connector, logging instead of raising so the caller's outcome stands."""
    try:
        await connector.close()
    except Exception as e:  # Broad on purpose: backend drivers raise their own error types
        logger.warning(f"Closing {connector.connector_type} connector failed: {e}")
