"""
Shared test configuration for DataLens.

Provides:
- A temporary SQLite database (aiosqlite) with every table created
- Repositories and settings bound to it
- An in-memory fake backend and connector for service tests
- An event recorder subscribed to the publisher
"""

from collections.abc import Mapping
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from datalens.connectors import (
    ConnectorCapabilities,
    ConnectorRegistry,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
)
from datalens.connectors.base import require_filter
from datalens.core.types import DataSourceType, DeletionMode, EntityType
from datalens.exceptions import ConnectionFailedError, ConnectorError
from datalens.server import models  # noqa: F401  (registers tables)
from datalens.server.config import Settings
from datalens.server.db import Base
from datalens.server.events import Event, EventPublisher
from datalens.server.models import DataSource
from datalens.server.repositories import Repositories


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as integration test")


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'datalens.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def repos(session_factory) -> Repositories:
    return Repositories(session_factory)


@pytest.fixture
def settings() -> Settings:
    """Default settings with short timeouts."""
    settings = Settings()
    settings.timeouts.connector_call = 5.0
    settings.timeouts.connector_connect = 5.0
    settings.timeouts.scan_job = 30
    settings.timeouts.dsr_task = 30
    return settings


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


# =============================================================================
# EVENTS
# =============================================================================


class EventRecorder:
    """Collects every published event."""

    def __init__(self, publisher: EventPublisher) -> None:
        self.publisher = publisher
        self.events: list[Event] = []
        publisher.subscribe(self._record)

    async def _record(self, event: Event) -> None:
        self.events.append(event)

    async def of_type(self, event_type: str) -> list[Event]:
        await self.publisher.drain()
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def events() -> EventPublisher:
    return EventPublisher()


@pytest.fixture
def recorder(events) -> EventRecorder:
    return EventRecorder(events)


# =============================================================================
# FAKE BACKEND
# =============================================================================


class FakeBackend:
    """
    In-memory store behind FakeConnector.

    ``tables`` maps entity name -> list of records. Every connector call
    is appended to ``calls`` as (operation, entity) so tests can assert
    what reached the backend.
    """

    def __init__(self, tables: Optional[dict[str, list[dict]]] = None) -> None:
        self.tables: dict[str, list[dict]] = tables or {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.connect_error: Optional[str] = None
        self.broken_entities: set[str] = set()
        self.export_errors: set[str] = set()
        self.delete_errors: set[str] = set()
        self.open_sessions = 0
        self.max_open_sessions = 0

    def operations(self, name: str) -> list[Optional[str]]:
        return [entity for op, entity in self.calls if op == name]


class FakeConnector:
    """Connector over a FakeBackend."""

    def __init__(self, backend: FakeBackend, source_type: str = DataSourceType.POSTGRESQL.value) -> None:
        self._backend = backend
        self._source_type = source_type
        self._connected = False

    @property
    def connector_type(self) -> str:
        return self._source_type

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(can_export=True, can_delete=True)

    async def connect(self, data_source: Any) -> None:
        self._backend.calls.append(("connect", None))
        if self._backend.connect_error:
            raise ConnectionFailedError(
                self._backend.connect_error,
                connector_type=self._source_type,
                operation="connect",
            )
        if not self._connected:
            self._connected = True
            self._backend.open_sessions += 1
            self._backend.max_open_sessions = max(
                self._backend.max_open_sessions, self._backend.open_sessions
            )

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        self._backend.calls.append(("discover_schema", None))
        entities = [DiscoveredEntity(name=name, type=EntityType.TABLE) for name in self._backend.tables]
        return InventorySummary(total_entities=len(entities)), entities

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        self._backend.calls.append(("get_fields", entity_name))
        if entity_name in self._backend.broken_entities:
            raise ConnectorError(
                f"cannot read {entity_name}",
                connector_type=self._source_type,
                operation="get_fields",
            )
        names: list[str] = []
        for record in self._backend.tables.get(entity_name, []):
            for key in record:
                if key not in names:
                    names.append(key)
        return [DiscoveredField(name=n, data_type="VARCHAR") for n in names]

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        self._backend.calls.append(("sample_data", entity_name))
        values = [r.get(field_name) for r in self._backend.tables.get(entity_name, [])]
        return [str(v) for v in values if v is not None][:limit]

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[dict]:
        require_filter(filter, "export")
        self._backend.calls.append(("export", entity_name))
        if entity_name in self._backend.export_errors:
            raise ConnectorError(
                f"export of {entity_name} failed",
                connector_type=self._source_type,
                operation="export",
            )
        return [
            dict(r)
            for r in self._backend.tables.get(entity_name, [])
            if all(r.get(k) == v for k, v in filter.items())
        ]

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        require_filter(filter, "delete")
        self._backend.calls.append(("delete", entity_name))
        if entity_name in self._backend.delete_errors:
            raise ConnectorError(
                f"delete from {entity_name} failed",
                connector_type=self._source_type,
                operation="delete",
            )
        rows = self._backend.tables.get(entity_name, [])
        keep = [r for r in rows if not all(r.get(k) == v for k, v in filter.items())]
        self._backend.tables[entity_name] = keep
        return len(rows) - len(keep)

    async def close(self) -> None:
        self._backend.calls.append(("close", None))
        if self._connected:
            self._connected = False
            self._backend.open_sessions -= 1


@pytest.fixture
def users_backend() -> FakeBackend:
    """A backend with one ``users`` table holding two subjects."""
    return FakeBackend({
        "users": [
            {"email": "alice@example.com", "phone": "415-555-0100"},
            {"email": "bob@example.com", "phone": "415-555-0199"},
        ],
    })


def make_registry(**backends: FakeBackend) -> ConnectorRegistry:
    """Registry mapping each data source type name to a fake backend."""
    registry = ConnectorRegistry()
    for source_type, backend in backends.items():
        registry.register(
            source_type,
            lambda backend=backend, source_type=source_type: FakeConnector(backend, source_type.upper()),
        )
    return registry


async def make_source(
    repos: Repositories,
    tenant_id: UUID,
    name: str = "Production PostgreSQL",
    source_type: str = DataSourceType.POSTGRESQL.value,
    deletion_mode: str = DeletionMode.AUTO.value,
    **kwargs: Any,
) -> DataSource:
    return await repos.data_sources.create(
        DataSource(
            tenant_id=tenant_id,
            name=name,
            type=source_type,
            deletion_mode=deletion_mode,
            credentials={},
            config=kwargs.pop("config", {}),
            **kwargs,
        )
    )


class RecordingQueue:
    """Stands in for a TaskQueue; records enqueued ids or raises ``error``."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.items: list[tuple[UUID, Optional[UUID]]] = []
        self.error = error

    async def enqueue(self, item_id: UUID, tenant_id: Optional[UUID] = None) -> UUID:
        if self.error is not None:
            raise self.error
        self.items.append((item_id, tenant_id))
        return uuid4()
