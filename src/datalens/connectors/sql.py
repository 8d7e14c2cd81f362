"""
Relational database connector (PostgreSQL, MySQL, SQL Server, SQLite).

Built on SQLAlchemy async engines; the dialect is picked from the data
source type. Schema discovery goes through the SQLAlchemy inspector,
sampling and DSR operations through Core ``select`` / ``delete``
constructs so identifiers are quoted by the dialect and values are
always bound parameters.

Data source fields used:
    host, port, database       connection target (database = file path for SQLite)
    credentials.username/password
    config.url                 full SQLAlchemy URL, overrides the above
    config.schema              schema to scan (dialect default when unset)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import and_, column, delete, inspect, select, table
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from datalens.core.types import DataSourceType, EntityType, normalize_data_source_type
from datalens.exceptions import ConnectionFailedError, ConnectorError, ValidationError

from .base import (
    ConnectorCapabilities,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
    Record,
    require_filter,
    to_jsonable,
    to_sample_text,
)

logger = logging.getLogger(__name__)

# Async driver per data source type
DRIVERS: dict[str, str] = {
    DataSourceType.POSTGRESQL.value: "postgresql+asyncpg",
    DataSourceType.MYSQL.value: "mysql+aiomysql",
    DataSourceType.SQLSERVER.value: "mssql+aioodbc",
    DataSourceType.SQLITE.value: "sqlite+aiosqlite",
}


def build_url(data_source: Any) -> URL:
    """Build the SQLAlchemy URL for a data source record."""
    config = data_source.config or {}
    if config.get("url"):
        return make_url(config["url"])

    source_type = normalize_data_source_type(data_source.type)
    drivername = DRIVERS.get(source_type)
    if drivername is None:
        raise ConnectionFailedError(
            f"No SQL driver for data source type {source_type}",
            connector_type=source_type,
            operation="connect",
        )

    if source_type == DataSourceType.SQLITE.value:
        return URL.create(drivername, database=data_source.database)

    credentials = data_source.credentials or {}
    query = {}
    if source_type == DataSourceType.SQLSERVER.value:
        query["driver"] = config.get("odbc_driver", "ODBC Driver 18 for SQL Server")
    return URL.create(
        drivername,
        username=credentials.get("username") or None,
        password=credentials.get("password") or None,
        host=data_source.host or None,
        port=data_source.port or None,
        database=data_source.database or None,
        query=query,
    )


class SQLConnector:
    """Connector for any SQLAlchemy-supported relational backend."""

    def __init__(self, source_type: str = DataSourceType.POSTGRESQL.value) -> None:
        self._source_type = normalize_data_source_type(source_type)
        self._engine: AsyncEngine | None = None
        self._schema: str | None = None
        # entity name -> column names, filled lazily from the inspector
        self._columns: dict[str, list[str]] = {}

    @property
    def connector_type(self) -> str:
        return self._source_type

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            can_discover=True,
            can_sample=True,
            can_export=True,
            can_delete=True,
            can_update=False,
            supports_incremental=False,
            max_concurrency=4,
        )

    async def connect(self, data_source: Any) -> None:
        if self._engine is not None:
            return

        self._source_type = normalize_data_source_type(data_source.type)
        self._schema = (data_source.config or {}).get("schema") or None
        url = build_url(data_source)
        engine = create_async_engine(url, pool_pre_ping=True)
        try:
            async with engine.connect() as conn:
                await conn.execute(select(1))
        except (SQLAlchemyError, OSError) as e:
            await engine.dispose()
            raise ConnectionFailedError(
                f"Failed to connect to {self._source_type} at "
                f"{url.render_as_string(hide_password=True)}: {e}",
                connector_type=self._source_type,
                operation="connect",
            ) from e
        self._engine = engine
        logger.info(f"Connected to {self._source_type} database {url.database}")

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        # Catalog tables carry no modification time; always enumerate fully
        engine = self._require_engine()
        schema = self._schema

        def _inspect(sync_conn) -> tuple[list[str], list[str]]:
            inspector = inspect(sync_conn)
            return (
                inspector.get_table_names(schema=schema),
                inspector.get_view_names(schema=schema),
            )

        try:
            async with engine.connect() as conn:
                tables, views = await conn.run_sync(_inspect)
        except SQLAlchemyError as e:
            raise ConnectorError(
                f"Schema discovery failed: {e}",
                connector_type=self._source_type,
                operation="discover_schema",
            ) from e

        entities = [
            DiscoveredEntity(name=name, type=EntityType.TABLE, schema=schema)
            for name in sorted(tables)
        ]
        entities.extend(
            DiscoveredEntity(name=name, type=EntityType.VIEW, schema=schema)
            for name in sorted(views)
        )
        return InventorySummary(total_entities=len(entities)), entities

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        engine = self._require_engine()
        schema = self._schema

        def _inspect(sync_conn) -> tuple[list[dict], list[str], set[str]]:
            inspector = inspect(sync_conn)
            columns = inspector.get_columns(entity_name, schema=schema)
            pk = inspector.get_pk_constraint(entity_name, schema=schema) or {}
            fk_columns: set[str] = set()
            for fk in inspector.get_foreign_keys(entity_name, schema=schema):
                fk_columns.update(fk.get("constrained_columns") or [])
            return columns, pk.get("constrained_columns") or [], fk_columns

        try:
            async with engine.connect() as conn:
                columns, pk_columns, fk_columns = await conn.run_sync(_inspect)
        except SQLAlchemyError as e:
            raise ConnectorError(
                f"Failed to read columns of {entity_name}: {e}",
                connector_type=self._source_type,
                operation="get_fields",
            ) from e

        self._columns[entity_name] = [c["name"] for c in columns]
        return [
            DiscoveredField(
                name=c["name"],
                data_type=str(c["type"]),
                nullable=bool(c.get("nullable", True)),
                is_primary_key=c["name"] in pk_columns,
                is_foreign_key=c["name"] in fk_columns,
            )
            for c in columns
        ]

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        engine = self._require_engine()
        col = column(field_name)
        query = (
            select(col)
            .select_from(table(entity_name, col, schema=self._schema))
            .where(col.is_not(None))
            .limit(limit)
        )
        try:
            async with engine.connect() as conn:
                result = await conn.execute(query)
                values = result.scalars().all()
        except SQLAlchemyError as e:
            logger.warning(f"Sampling {entity_name}.{field_name} failed: {e}")
            return []

        samples = []
        for value in values:
            text = to_sample_text(value)
            if text is not None:
                samples.append(text)
        return samples

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        require_filter(filter, "export")
        engine = self._require_engine()
        columns = await self._known_columns(entity_name)
        tbl = table(entity_name, *[column(c) for c in columns], schema=self._schema)
        query = select(tbl).where(self._where(tbl, columns, filter))

        try:
            async with engine.connect() as conn:
                result = await conn.execute(query)
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise ConnectorError(
                f"Export from {entity_name} failed: {e}",
                connector_type=self._source_type,
                operation="export",
            ) from e
        return [{k: to_jsonable(v) for k, v in row.items()} for row in rows]

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        require_filter(filter, "delete")
        engine = self._require_engine()
        columns = await self._known_columns(entity_name)
        tbl = table(entity_name, *[column(c) for c in columns], schema=self._schema)
        statement = delete(tbl).where(self._where(tbl, columns, filter))

        try:
            async with engine.begin() as conn:
                result = await conn.execute(statement)
        except SQLAlchemyError as e:
            raise ConnectorError(
                f"Delete from {entity_name} failed: {e}",
                connector_type=self._source_type,
                operation="delete",
            ) from e
        deleted = max(result.rowcount or 0, 0)
        logger.info(f"Deleted {deleted} row(s) from {entity_name}")
        return deleted

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._columns.clear()

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise ConnectorError(
                "Connector is not connected",
                connector_type=self._source_type,
                operation="query",
            )
        return self._engine

    async def _known_columns(self, entity_name: str) -> list[str]:
        if entity_name not in self._columns:
            await self.get_fields(entity_name)
        return self._columns[entity_name]

    @staticmethod
    def _where(tbl, columns: list[str], filter: Mapping[str, Any]):
        unknown = [key for key in filter if key not in columns]
        if unknown:
            raise ValidationError(
                f"Unknown column(s) in filter: {', '.join(sorted(unknown))}",
                field="filter",
                reason="unknown_column",
            )
        return and_(*[tbl.c[key] == value for key, value in filter.items()])
