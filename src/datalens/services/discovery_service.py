"""
Discovery pipeline.

Drives one connector and the composable detector over a data source and
persists what it finds:

    connect -> discover_schema -> upsert inventory
        -> per entity: match/create, get_fields
            -> per field: match/create, sample, detect, classify
    -> recompute inventory totals -> mark source CONNECTED

Entities are matched by name under the inventory and fields by name
under their entity, so scanning an unchanged backend twice writes no new
rows. A renamed column shows up as a new field; the old field and its
classification are left in place.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from datalens.connectors import (
    Connector,
    ConnectorRegistry,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    call_with_timeout,
    close_connector,
)
from datalens.core.detection import (
    ColumnContext,
    ComposableDetector,
    DetectionInput,
    MergedDetection,
)
from datalens.core.types import ConnectionStatus, VerificationStatus
from datalens.core.utils import utc_now
from datalens.exceptions import ConnectionFailedError, ConnectorError, DetectionError
from datalens.server.config import Settings
from datalens.server.events import SCAN_COMPLETED, AuditLogger, EventPublisher
from datalens.server.metrics import record_classification
from datalens.server.models import (
    DataEntity,
    DataField,
    DataInventory,
    DataSource,
    PIIClassification,
)
from datalens.server.repositories import Repositories
from datalens.services.base import BaseService

# Called with a 0-100 percentage as entities complete
ProgressCallback = Callable[[int], Awaitable[None]]

# Human verdicts a rescan must not overwrite
_LOCKED_STATUSES = frozenset({VerificationStatus.VERIFIED.value, VerificationStatus.REJECTED.value})


@dataclass
class ScanStats:
    """Counters for one discovery pass."""

    entities_discovered: int = 0
    entities_scanned: int = 0
    entities_skipped: int = 0
    fields_scanned: int = 0
    fields_skipped: int = 0
    classifications_written: int = 0
    total_entities: int = 0
    total_fields: int = 0
    pii_fields_count: int = 0
    incremental: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConnectionTestResult:
    success: bool
    status: ConnectionStatus
    error: Optional[str] = None
    duration_ms: float = 0.0


class DiscoveryPipeline(BaseService):
    """Populates inventory, entity, field and classification rows for a data source."""

    def __init__(
        self,
        repos: Repositories,
        settings: Settings,
        registry: ConnectorRegistry,
        detector: ComposableDetector,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditLogger] = None,
    ):
        super().__init__(repos, settings, events, audit)
        self._registry = registry
        self._detector = detector

    async def scan_data_source(
        self,
        data_source_id: UUID,
        changed_since: Optional[datetime] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ScanStats:
        """
        Discover and classify one data source.

        Raises:
            NotFoundError: Unknown data source
            UnsupportedConnectorError: No connector for the source type
            ConnectionFailedError: Backend unreachable (source marked ERROR)
            ConnectorError: Schema discovery failed
        """
        source = await self.repos.data_sources.get_or_raise(data_source_id)
        connector = self._registry.create(source.type)
        stats = ScanStats(incremental=changed_since is not None)

        await self._connect(connector, source)
        try:
            summary, entities = await call_with_timeout(
                connector.discover_schema(DiscoveryInput(changed_since=changed_since)),
                self.settings.timeouts.connector_call,
                "discover_schema",
                connector.connector_type,
            )
            stats.entities_discovered = len(entities)
            self._log_info(
                f"Discovered {len(entities)} entities in {source.name}"
                + (f" changed since {changed_since.isoformat()}" if changed_since else ""),
                tenant_id=source.tenant_id,
                data_source_id=str(source.id),
            )

            inventory = await self._upsert_inventory(source, summary.total_entities, summary.schema_version)

            for index, discovered in enumerate(entities, start=1):
                await self._scan_entity(connector, source, inventory, discovered, stats)
                if on_progress is not None:
                    await on_progress(int(index * 100 / len(entities)))
        finally:
            await close_connector(connector)

        await self._finalize_inventory(source, inventory, stats)
        await self.repos.data_sources.update_connection_status(
            source.id,
            ConnectionStatus.CONNECTED.value,
            error=None,
            last_sync_at=utc_now(),
        )

        self.publish(
            SCAN_COMPLETED,
            source.tenant_id,
            {
                "data_source_id": str(source.id),
                "entities": stats.total_entities,
                "fields": stats.total_fields,
                "pii_fields": stats.pii_fields_count,
            },
        )
        return stats

    async def test_connection(self, data_source_id: UUID) -> ConnectionTestResult:
        """Connect, record CONNECTED or ERROR on the source, close."""
        source = await self.repos.data_sources.get_or_raise(data_source_id)
        connector = self._registry.create(source.type)
        start = time.monotonic()
        try:
            await self._connect(connector, source)
        except ConnectionFailedError as e:
            return ConnectionTestResult(
                success=False,
                status=ConnectionStatus.ERROR,
                error=e.message,
                duration_ms=(time.monotonic() - start) * 1000,
            )
        finally:
            await close_connector(connector)

        await self.repos.data_sources.update_connection_status(
            source.id, ConnectionStatus.CONNECTED.value, error=None
        )
        self._log_info(f"Connection test passed for {source.name}", tenant_id=source.tenant_id)
        return ConnectionTestResult(
            success=True,
            status=ConnectionStatus.CONNECTED,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def _connect(self, connector: Connector, source: DataSource) -> None:
        """Connect or mark the source ERROR and raise ``ConnectionFailedError``."""
        try:
            await call_with_timeout(
                connector.connect(source),
                self.settings.timeouts.connector_connect,
                "connect",
                connector.connector_type,
            )
        except ConnectorError as e:
            self._log_error(
                f"Connection to {source.name} failed: {e.message}",
                tenant_id=source.tenant_id,
                data_source_id=str(source.id),
            )
            await self.repos.data_sources.update_connection_status(
                source.id, ConnectionStatus.ERROR.value, error=e.message
            )
            if isinstance(e, ConnectionFailedError):
                raise
            raise ConnectionFailedError(
                e.message,
                connector_type=connector.connector_type,
                operation="connect",
            ) from e

    async def _upsert_inventory(
        self,
        source: DataSource,
        total_entities: int,
        schema_version: str,
    ) -> DataInventory:
        inventory = await self.repos.inventories.get_by_data_source(source.id)
        version = _schema_version(schema_version)
        if inventory is None:
            return await self.repos.inventories.create(
                DataInventory(
                    data_source_id=source.id,
                    total_entities=total_entities,
                    total_fields=0,
                    pii_fields_count=0,
                    last_scanned_at=utc_now(),
                    schema_version=version,
                )
            )
        inventory.schema_version = version
        inventory.last_scanned_at = utc_now()
        return await self.repos.inventories.update(inventory)

    async def _scan_entity(
        self,
        connector: Connector,
        source: DataSource,
        inventory: DataInventory,
        discovered: DiscoveredEntity,
        stats: ScanStats,
    ) -> None:
        entity = await self._upsert_entity(inventory, discovered)

        try:
            fields = await call_with_timeout(
                connector.get_fields(discovered.name),
                self.settings.timeouts.connector_call,
                "get_fields",
                connector.connector_type,
            )
        except ConnectorError as e:
            self._log_warning(
                f"Skipping entity {discovered.name}: {e.message}",
                tenant_id=source.tenant_id,
                entity=discovered.name,
            )
            stats.entities_skipped += 1
            return

        adjacent = [ColumnContext(name=f.name, data_type=f.data_type) for f in fields]
        best_confidence = 0.0
        for discovered_field in fields:
            detection = await self._scan_field(
                connector, source, entity, discovered, discovered_field, adjacent, stats
            )
            if detection is not None:
                best_confidence = max(best_confidence, detection.confidence)

        if entity.pii_confidence != best_confidence:
            entity.pii_confidence = best_confidence
            await self.repos.entities.update(entity)
        stats.entities_scanned += 1

    async def _upsert_entity(self, inventory: DataInventory, discovered: DiscoveredEntity) -> DataEntity:
        entity = await self.repos.entities.find_by_name(inventory.id, discovered.name)
        entity_type = discovered.type.value
        if entity is None:
            return await self.repos.entities.create(
                DataEntity(
                    inventory_id=inventory.id,
                    name=discovered.name,
                    schema=discovered.schema,
                    type=entity_type,
                    row_count=discovered.row_count,
                    pii_confidence=0.0,
                )
            )
        if (entity.type, entity.schema, entity.row_count) != (
            entity_type,
            discovered.schema,
            discovered.row_count,
        ):
            entity.type = entity_type
            entity.schema = discovered.schema
            entity.row_count = discovered.row_count
            entity = await self.repos.entities.update(entity)
        return entity

    async def _scan_field(
        self,
        connector: Connector,
        source: DataSource,
        entity: DataEntity,
        discovered_entity: DiscoveredEntity,
        discovered: DiscoveredField,
        adjacent: list[ColumnContext],
        stats: ScanStats,
    ) -> Optional[MergedDetection]:
        field = await self._upsert_field(entity, discovered)
        stats.fields_scanned += 1

        try:
            samples = await call_with_timeout(
                connector.sample_data(discovered_entity.name, discovered.name, self.settings.scans.sample_limit),
                self.settings.timeouts.connector_call,
                "sample_data",
                connector.connector_type,
            )
        except ConnectorError as e:
            self._log_debug(
                f"No samples for {entity.name}.{field.name}: {e.message}",
                tenant_id=source.tenant_id,
            )
            samples = []

        try:
            report = await self._detector.detect(
                DetectionInput(
                    column_name=discovered.name,
                    data_type=discovered.data_type,
                    nullable=discovered.nullable,
                    table_name=discovered_entity.name,
                    schema_name=discovered_entity.schema or "",
                    samples=samples,
                    adjacent_columns=[c for c in adjacent if c.name != discovered.name],
                    industry=(source.config or {}).get("industry"),
                )
            )
        except (DetectionError, ValueError, RuntimeError) as e:
            self._log_warning(
                f"Detection failed for {entity.name}.{field.name}: {e}",
                tenant_id=source.tenant_id,
            )
            stats.fields_skipped += 1
            return None

        top = report.top_match
        if top is None or top.confidence < self.settings.detection.min_confidence:
            return None

        await self._upsert_classification(source, entity, field, top)
        stats.classifications_written += 1
        return top

    async def _upsert_field(self, entity: DataEntity, discovered: DiscoveredField) -> DataField:
        field = await self.repos.fields.find_by_name(entity.id, discovered.name)
        if field is None:
            return await self.repos.fields.create(
                DataField(
                    entity_id=entity.id,
                    name=discovered.name,
                    data_type=discovered.data_type,
                    nullable=discovered.nullable,
                    is_primary_key=discovered.is_primary_key,
                    is_foreign_key=discovered.is_foreign_key,
                )
            )
        current = (field.data_type, field.nullable, field.is_primary_key, field.is_foreign_key)
        wanted = (
            discovered.data_type,
            discovered.nullable,
            discovered.is_primary_key,
            discovered.is_foreign_key,
        )
        if current != wanted:
            (field.data_type, field.nullable, field.is_primary_key, field.is_foreign_key) = wanted
            field = await self.repos.fields.update(field)
        return field

    async def _upsert_classification(
        self,
        source: DataSource,
        entity: DataEntity,
        field: DataField,
        detection: MergedDetection,
    ) -> None:
        existing = await self.repos.classifications.get_by_field(field.id)
        if existing is not None and existing.status in _LOCKED_STATUSES:
            return

        if existing is None:
            await self.repos.classifications.create(
                PIIClassification(
                    field_id=field.id,
                    data_source_id=source.id,
                    entity_name=entity.name,
                    field_name=field.name,
                    category=detection.category.value,
                    type=detection.pii_type.value,
                    sensitivity=detection.sensitivity.value,
                    confidence=detection.confidence,
                    detection_method=detection.primary_method.value,
                    reasoning=detection.reasoning,
                    status=VerificationStatus.PENDING.value,
                )
            )
            record_classification(detection.category.value)
            return

        existing.entity_name = entity.name
        existing.field_name = field.name
        existing.category = detection.category.value
        existing.type = detection.pii_type.value
        existing.sensitivity = detection.sensitivity.value
        existing.confidence = detection.confidence
        existing.detection_method = detection.primary_method.value
        existing.reasoning = detection.reasoning
        await self.repos.classifications.update(existing)

    async def _finalize_inventory(
        self,
        source: DataSource,
        inventory: DataInventory,
        stats: ScanStats,
    ) -> None:
        stats.total_entities = await self.repos.entities.count_by_inventory(inventory.id)
        stats.total_fields = await self.repos.fields.count_by_inventory(inventory.id)
        stats.pii_fields_count = await self.repos.classifications.count_pii_fields(source.id)

        inventory.total_entities = stats.total_entities
        inventory.total_fields = stats.total_fields
        inventory.pii_fields_count = stats.pii_fields_count
        inventory.last_scanned_at = utc_now()
        await self.repos.inventories.update(inventory)


def _schema_version(value: str) -> int:
    """Major component of a connector's schema version string."""
    try:
        return int(str(value).split(".", 1)[0])
    except ValueError:
        return 1
