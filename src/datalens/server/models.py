"""
SQLAlchemy database models for DataLens.

Design principles:
- UUIDv7 for primary keys (time-sorted for better index locality)
- Enum values stored as plain strings so the same schema runs on
  PostgreSQL in production and SQLite in tests
- Explicit indexes for common query patterns
- JSONB for truly flexible data only (credentials, config, results)

Tenants and users live in an external identity service; ``tenant_id``
columns are plain UUIDs without a foreign key.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID as PyUUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator
from uuid_utils import uuid7

from datalens.core.types import (
    ConnectionStatus,
    DeletionMode,
    DSRStatus,
    ScanStatus,
    ScanType,
    TaskStatus,
    VerificationStatus,
)
from datalens.core.utils import utc_now
from datalens.server.db import Base


# =============================================================================
# CROSS-DATABASE JSON TYPE
# =============================================================================

class JSONB(TypeDecorator):
    """
    Cross-database JSON type.

    Uses PostgreSQL JSONB when available (for performance and indexing),
    falls back to standard JSON for SQLite testing.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_JSONB())
        return dialect.type_descriptor(JSON())


# =============================================================================
# UUID v7 GENERATION
# =============================================================================

def generate_uuid() -> PyUUID:
    """
    Generate a time-sorted UUID (v7) for use as primary key.

    Always returns a standard library uuid.UUID so values compare equal
    to the ones asyncpg returns from PostgreSQL.
    """
    return PyUUID(str(uuid7()))


# =============================================================================
# DATA SOURCES
# =============================================================================


class DataSource(Base):
    """Tenant-owned backend that is scanned for PII and targeted by DSRs."""

    __tablename__ = "data_sources"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    tenant_id: Mapped[PyUUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    host: Mapped[Optional[str]] = mapped_column(String(255))
    port: Mapped[Optional[int]] = mapped_column(Integer)
    database: Mapped[Optional[str]] = mapped_column(String(255))
    credentials: Mapped[dict] = mapped_column(JSONB, default=dict)
    config: Mapped[dict] = mapped_column(JSONB, default=dict)
    deletion_mode: Mapped[str] = mapped_column(String(20), default=DeletionMode.AUTO.value)
    connection_status: Mapped[str] = mapped_column(
        String(20), default=ConnectionStatus.DISCONNECTED.value
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scan_schedule: Mapped[Optional[str]] = mapped_column(String(100))  # Cron expression
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index('ix_data_sources_tenant', 'tenant_id'),
    )


class ScanRun(Base):
    """One execution attempt of discovery against a data source."""

    __tablename__ = "scan_runs"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    data_source_id: Mapped[PyUUID] = mapped_column(ForeignKey("data_sources.id"), nullable=False)
    tenant_id: Mapped[PyUUID] = mapped_column(Uuid, nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=ScanType.FULL.value)
    status: Mapped[str] = mapped_column(String(20), default=ScanStatus.PENDING.value)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    stats: Mapped[Optional[dict]] = mapped_column(JSONB)  # {duration, entities, fields, pii_found}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_scan_runs_tenant_status', 'tenant_id', 'status'),
        Index('ix_scan_runs_source_completed', 'data_source_id', 'status', 'completed_at'),
    )


# =============================================================================
# INVENTORY
# =============================================================================


class DataInventory(Base):
    """Per-source rollup of what discovery found."""

    __tablename__ = "data_inventories"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    data_source_id: Mapped[PyUUID] = mapped_column(
        ForeignKey("data_sources.id"), nullable=False, unique=True
    )
    total_entities: Mapped[int] = mapped_column(Integer, default=0)
    total_fields: Mapped[int] = mapped_column(Integer, default=0)
    pii_fields_count: Mapped[int] = mapped_column(Integer, default=0)
    last_scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    entities: Mapped[list["DataEntity"]] = relationship(back_populates="inventory")


class DataEntity(Base):
    """A table, collection, folder or file under an inventory."""

    __tablename__ = "data_entities"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    inventory_id: Mapped[PyUUID] = mapped_column(ForeignKey("data_inventories.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    schema: Mapped[Optional[str]] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    row_count: Mapped[Optional[int]] = mapped_column(Integer)
    pii_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    inventory: Mapped["DataInventory"] = relationship(back_populates="entities")
    fields: Mapped[list["DataField"]] = relationship(back_populates="entity")

    __table_args__ = (
        Index('ix_data_entities_inventory_name', 'inventory_id', 'name'),
    )


class DataField(Base):
    """A column or document key under an entity."""

    __tablename__ = "data_fields"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    entity_id: Mapped[PyUUID] = mapped_column(ForeignKey("data_entities.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    data_type: Mapped[str] = mapped_column(String(100), default="")
    nullable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_primary_key: Mapped[bool] = mapped_column(Boolean, default=False)
    is_foreign_key: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    entity: Mapped["DataEntity"] = relationship(back_populates="fields")

    __table_args__ = (
        Index('ix_data_fields_entity_name', 'entity_id', 'name'),
    )


class PIIClassification(Base):
    """
    Detection verdict for one (entity, field) pair.

    ``data_source_id``, ``entity_name`` and ``field_name`` are denormalized
    so DSR execution can target connectors without joining through the
    inventory tables.
    """

    __tablename__ = "pii_classifications"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    field_id: Mapped[PyUUID] = mapped_column(ForeignKey("data_fields.id"), nullable=False)
    data_source_id: Mapped[PyUUID] = mapped_column(ForeignKey("data_sources.id"), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(512), nullable=False)
    field_name: Mapped[str] = mapped_column(String(512), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    sensitivity: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    detection_method: Mapped[str] = mapped_column(String(20), nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=VerificationStatus.PENDING.value)
    verified_by: Mapped[Optional[PyUUID]] = mapped_column(Uuid)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_pii_classifications_source', 'data_source_id'),
        Index('ix_pii_classifications_field', 'field_id'),
    )


# =============================================================================
# DATA SUBJECT REQUESTS
# =============================================================================


class DSR(Base):
    """Data subject request."""

    __tablename__ = "dsrs"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    tenant_id: Mapped[PyUUID] = mapped_column(Uuid, nullable=False)
    request_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default=DSRStatus.PENDING.value)
    subject_name: Mapped[Optional[str]] = mapped_column(String(255))
    subject_email: Mapped[Optional[str]] = mapped_column(String(255))
    subject_identifiers: Mapped[dict] = mapped_column(JSONB, default=dict)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    sla_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index('ix_dsrs_tenant_status', 'tenant_id', 'status'),
        Index('ix_dsrs_sla_deadline', 'sla_deadline'),
    )


class DSRTask(Base):
    """Work item for one (DSR, data source) pair. Owned by the executor."""

    __tablename__ = "dsr_tasks"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    dsr_id: Mapped[PyUUID] = mapped_column(ForeignKey("dsrs.id"), nullable=False)
    data_source_id: Mapped[PyUUID] = mapped_column(ForeignKey("data_sources.id"), nullable=False)
    tenant_id: Mapped[PyUUID] = mapped_column(Uuid, nullable=False)
    task_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default=TaskStatus.PENDING.value)
    result: Mapped[Optional[dict]] = mapped_column(JSONB)
    error: Mapped[Optional[str]] = mapped_column(Text)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_dsr_tasks_dsr', 'dsr_id'),
    )


# =============================================================================
# INFRASTRUCTURE
# =============================================================================


class AuditLog(Base):
    """Audit trail for scan and DSR actions."""

    __tablename__ = "audit_log"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    tenant_id: Mapped[PyUUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[Optional[str]] = mapped_column(String(50))
    resource_id: Mapped[Optional[PyUUID]] = mapped_column(Uuid)
    details: Mapped[Optional[dict]] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_audit_log_tenant_time', 'tenant_id', 'created_at'),
        Index('ix_audit_log_resource', 'resource_type', 'resource_id'),
    )


class JobQueue(Base):
    """Database-backed job queue."""

    __tablename__ = "job_queue"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)
    tenant_id: Mapped[Optional[PyUUID]] = mapped_column(Uuid)
    task_type: Mapped[str] = mapped_column(String(50), nullable=False)  # 'scan', 'dsr'
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=50)  # 0-100
    status: Mapped[str] = mapped_column(String(20), default="pending")
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    worker_id: Mapped[Optional[str]] = mapped_column(String(100))
    result: Mapped[Optional[dict]] = mapped_column(JSONB)
    error: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        # For worker polling: find pending jobs by priority
        Index('ix_job_queue_pending', 'status', 'priority', 'scheduled_for'),
        Index('ix_job_queue_type_status', 'task_type', 'status', 'created_at'),
    )
