"""
Persistence gateways for the discovery and DSR domain.

Every repository method opens its own short-lived session from the
factory and commits before returning, so concurrent scan workers and
DSR tasks never share a session. Returned rows are detached (the
factory uses ``expire_on_commit=False``); callers mutate them and hand
them back to ``update()``, which merges the full row. Concurrent updates
to the same row are last-writer-wins.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Generic, Optional, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datalens.core.types import (
    DSRStatus,
    ScanStatus,
    VerificationStatus,
)
from datalens.core.utils import utc_now
from datalens.exceptions import NotFoundError
from datalens.server.db import Base
from datalens.server.models import (
    DSR,
    AuditLog,
    DataEntity,
    DataField,
    DataInventory,
    DataSource,
    DSRTask,
    PIIClassification,
    ScanRun,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class Repository(Generic[ModelT]):
    """Create / get / update for one model, one session per call."""

    model: type[ModelT]

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, obj: ModelT) -> ModelT:
        async with self._session_factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def get(self, obj_id: UUID) -> Optional[ModelT]:
        async with self._session_factory() as session:
            return await session.get(self.model, obj_id)

    async def get_or_raise(self, obj_id: UUID) -> ModelT:
        obj = await self.get(obj_id)
        if obj is None:
            raise NotFoundError(
                message=f"{self.model.__name__} not found",
                resource_type=self.model.__name__,
                resource_id=str(obj_id),
            )
        return obj

    async def update(self, obj: ModelT) -> ModelT:
        async with self._session_factory() as session:
            merged = await session.merge(obj)
            await session.commit()
        return merged

    async def _scalars(self, query: Any) -> list[ModelT]:
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _scalar(self, query: Any) -> Any:
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalar()


class DataSourceRepository(Repository[DataSource]):
    model = DataSource

    async def list_by_tenant(self, tenant_id: UUID) -> list[DataSource]:
        return await self._scalars(
            select(DataSource)
            .where(DataSource.tenant_id == tenant_id)
            .order_by(DataSource.created_at)
        )

    async def update_connection_status(
        self,
        data_source_id: UUID,
        status: str,
        error: Optional[str] = None,
        last_sync_at: Optional[datetime] = None,
    ) -> None:
        async with self._session_factory() as session:
            source = await session.get(DataSource, data_source_id)
            if source is None:
                logger.warning(f"Data source {data_source_id} vanished before status update")
                return
            source.connection_status = status
            source.last_error = error
            if last_sync_at is not None:
                source.last_sync_at = last_sync_at
            await session.commit()


class ScanRunRepository(Repository[ScanRun]):
    model = ScanRun

    async def count_active(self, tenant_id: UUID) -> int:
        """Runs holding a tenant scan slot: PENDING ones are about to run."""
        count = await self._scalar(
            select(func.count())
            .select_from(ScanRun)
            .where(
                ScanRun.tenant_id == tenant_id,
                ScanRun.status.in_([ScanStatus.PENDING.value, ScanStatus.RUNNING.value]),
            )
        )
        return count or 0

    async def list_by_data_source(self, data_source_id: UUID) -> list[ScanRun]:
        return await self._scalars(
            select(ScanRun)
            .where(ScanRun.data_source_id == data_source_id)
            .order_by(ScanRun.created_at.desc())
        )

    async def get_last_completed(self, data_source_id: UUID) -> Optional[ScanRun]:
        runs = await self._scalars(
            select(ScanRun)
            .where(
                ScanRun.data_source_id == data_source_id,
                ScanRun.status == ScanStatus.COMPLETED.value,
                ScanRun.completed_at.is_not(None),
            )
            .order_by(ScanRun.completed_at.desc())
            .limit(1)
        )
        return runs[0] if runs else None


class InventoryRepository(Repository[DataInventory]):
    model = DataInventory

    async def get_by_data_source(self, data_source_id: UUID) -> Optional[DataInventory]:
        rows = await self._scalars(
            select(DataInventory).where(DataInventory.data_source_id == data_source_id)
        )
        return rows[0] if rows else None


class EntityRepository(Repository[DataEntity]):
    model = DataEntity

    async def list_by_inventory(self, inventory_id: UUID) -> list[DataEntity]:
        return await self._scalars(
            select(DataEntity)
            .where(DataEntity.inventory_id == inventory_id)
            .order_by(DataEntity.name)
        )

    async def find_by_name(self, inventory_id: UUID, name: str) -> Optional[DataEntity]:
        rows = await self._scalars(
            select(DataEntity)
            .where(DataEntity.inventory_id == inventory_id, DataEntity.name == name)
            .limit(1)
        )
        return rows[0] if rows else None

    async def count_by_inventory(self, inventory_id: UUID) -> int:
        count = await self._scalar(
            select(func.count())
            .select_from(DataEntity)
            .where(DataEntity.inventory_id == inventory_id)
        )
        return count or 0


class FieldRepository(Repository[DataField]):
    model = DataField

    async def list_by_entity(self, entity_id: UUID) -> list[DataField]:
        return await self._scalars(
            select(DataField)
            .where(DataField.entity_id == entity_id)
            .order_by(DataField.name)
        )

    async def find_by_name(self, entity_id: UUID, name: str) -> Optional[DataField]:
        rows = await self._scalars(
            select(DataField)
            .where(DataField.entity_id == entity_id, DataField.name == name)
            .limit(1)
        )
        return rows[0] if rows else None

    async def count_by_inventory(self, inventory_id: UUID) -> int:
        count = await self._scalar(
            select(func.count())
            .select_from(DataField)
            .join(DataEntity, DataField.entity_id == DataEntity.id)
            .where(DataEntity.inventory_id == inventory_id)
        )
        return count or 0


class ClassificationRepository(Repository[PIIClassification]):
    model = PIIClassification

    async def get_by_field(self, field_id: UUID) -> Optional[PIIClassification]:
        rows = await self._scalars(
            select(PIIClassification)
            .where(PIIClassification.field_id == field_id)
            .order_by(PIIClassification.created_at.desc())
            .limit(1)
        )
        return rows[0] if rows else None

    async def list_by_data_source(
        self,
        data_source_id: UUID,
        limit: int = 1000,
        include_rejected: bool = False,
    ) -> list[PIIClassification]:
        query = select(PIIClassification).where(
            PIIClassification.data_source_id == data_source_id
        )
        if not include_rejected:
            query = query.where(PIIClassification.status != VerificationStatus.REJECTED.value)
        return await self._scalars(
            query.order_by(PIIClassification.entity_name, PIIClassification.field_name).limit(limit)
        )

    async def count_pii_fields(self, data_source_id: UUID) -> int:
        """Distinct fields with a live (not rejected) classification."""
        count = await self._scalar(
            select(func.count(func.distinct(PIIClassification.field_id)))
            .where(
                PIIClassification.data_source_id == data_source_id,
                PIIClassification.status != VerificationStatus.REJECTED.value,
            )
        )
        return count or 0


class DSRRepository(Repository[DSR]):
    model = DSR

    async def list_by_tenant(
        self,
        tenant_id: UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[DSR]:
        query = select(DSR).where(DSR.tenant_id == tenant_id)
        if statuses:
            query = query.where(DSR.status.in_(list(statuses)))
        return await self._scalars(query.order_by(DSR.created_at.desc()))

    async def list_overdue(self, tenant_id: UUID) -> list[DSR]:
        open_statuses = [
            DSRStatus.PENDING.value,
            DSRStatus.IDENTITY_VERIFICATION.value,
            DSRStatus.APPROVED.value,
            DSRStatus.IN_PROGRESS.value,
        ]
        return await self._scalars(
            select(DSR)
            .where(
                DSR.tenant_id == tenant_id,
                DSR.status.in_(open_statuses),
                DSR.sla_deadline.is_not(None),
                DSR.sla_deadline < utc_now(),
            )
            .order_by(DSR.sla_deadline)
        )


class DSRTaskRepository(Repository[DSRTask]):
    model = DSRTask

    async def create_many(self, tasks: Sequence[DSRTask]) -> list[DSRTask]:
        async with self._session_factory() as session:
            session.add_all(list(tasks))
            await session.commit()
        return list(tasks)

    async def list_by_dsr(self, dsr_id: UUID) -> list[DSRTask]:
        return await self._scalars(
            select(DSRTask)
            .where(DSRTask.dsr_id == dsr_id)
            .order_by(DSRTask.created_at)
        )


class AuditLogRepository(Repository[AuditLog]):
    model = AuditLog

    async def list_by_resource(self, resource_type: str, resource_id: UUID) -> list[AuditLog]:
        return await self._scalars(
            select(AuditLog)
            .where(AuditLog.resource_type == resource_type, AuditLog.resource_id == resource_id)
            .order_by(AuditLog.created_at)
        )


class Repositories:
    """All repositories bound to one session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.data_sources = DataSourceRepository(session_factory)
        self.scan_runs = ScanRunRepository(session_factory)
        self.inventories = InventoryRepository(session_factory)
        self.entities = EntityRepository(session_factory)
        self.fields = FieldRepository(session_factory)
        self.classifications = ClassificationRepository(session_factory)
        self.dsrs = DSRRepository(session_factory)
        self.dsr_tasks = DSRTaskRepository(session_factory)
        self.audit_logs = AuditLogRepository(session_factory)
