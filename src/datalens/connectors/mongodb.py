"""
MongoDB connector.

pymongo is synchronous; every driver call runs via ``asyncio.to_thread``
so the event loop is never blocked. Collections are entities; fields are
inferred from a small document sample and nested keys are flattened to
dotted paths (``address.city``), which MongoDB also accepts in queries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Mapping
from typing import Any

from bson import ObjectId
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from datalens.core.constants import MAX_DOCUMENT_SAMPLE
from datalens.core.types import DataSourceType, EntityType
from datalens.exceptions import ConnectionFailedError, ConnectorError

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


def flatten_document(doc: Mapping[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield (dotted_path, value) for every leaf key of a document."""
    for key, value in doc.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            yield from flatten_document(value, path)
        else:
            yield path, value


def get_dotted(doc: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path inside a document, or None."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _type_name(value: Any) -> str:
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


class MongoDBConnector:
    """Connector for MongoDB databases."""

    def __init__(self, server_selection_timeout_ms: int = 10_000) -> None:
        self._timeout_ms = server_selection_timeout_ms
        self._client: MongoClient | None = None
        self._db = None

    @property
    def connector_type(self) -> str:
        return DataSourceType.MONGODB.value

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
        if self._client is not None:
            return

        config = data_source.config or {}
        credentials = data_source.credentials or {}
        database = data_source.database or config.get("database")
        if not database:
            raise ConnectionFailedError(
                "MongoDB data source has no database name",
                connector_type=self.connector_type,
                operation="connect",
            )

        kwargs: dict[str, Any] = {"serverSelectionTimeoutMS": self._timeout_ms}
        uri = config.get("uri")
        if not uri:
            uri = f"mongodb://{data_source.host or 'localhost'}:{data_source.port or 27017}"
            if credentials.get("username"):
                kwargs["username"] = credentials["username"]
                kwargs["password"] = credentials.get("password", "")
                kwargs["authSource"] = config.get("auth_source", "admin")

        client = MongoClient(uri, **kwargs)
        try:
            await asyncio.to_thread(client.admin.command, "ping")
        except PyMongoError as e:
            await asyncio.to_thread(client.close)
            raise ConnectionFailedError(
                f"Failed to connect to MongoDB: {e}",
                connector_type=self.connector_type,
                operation="connect",
            ) from e

        self._client = client
        self._db = client[database]
        logger.info(f"Connected to MongoDB database {database}")

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        db = self._require_db()
        try:
            names = await asyncio.to_thread(db.list_collection_names)
        except PyMongoError as e:
            raise ConnectorError(
                f"Listing collections failed: {e}",
                connector_type=self.connector_type,
                operation="discover_schema",
            ) from e

        entities = []
        for name in sorted(n for n in names if not n.startswith("system.")):
            try:
                count = await asyncio.to_thread(db[name].estimated_document_count)
            except PyMongoError as e:
                logger.warning(f"Counting documents in {name} failed: {e}")
                count = None
            entities.append(
                DiscoveredEntity(name=name, type=EntityType.COLLECTION, row_count=count)
            )
        return InventorySummary(total_entities=len(entities)), entities

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        db = self._require_db()

        def _sample() -> list[dict]:
            return list(db[entity_name].find({}).limit(MAX_DOCUMENT_SAMPLE))

        try:
            docs = await asyncio.to_thread(_sample)
        except PyMongoError as e:
            raise ConnectorError(
                f"Sampling documents of {entity_name} failed: {e}",
                connector_type=self.connector_type,
                operation="get_fields",
            ) from e

        # First-seen order across the sample; a key missing from any doc is nullable
        seen: dict[str, DiscoveredField] = {}
        counts: dict[str, int] = {}
        for doc in docs:
            for path, value in flatten_document(doc):
                counts[path] = counts.get(path, 0) + 1
                if path not in seen:
                    seen[path] = DiscoveredField(
                        name=path,
                        data_type=_type_name(value),
                        is_primary_key=path == "_id",
                    )
        for path, field in seen.items():
            field.nullable = counts[path] < len(docs)
        return list(seen.values())

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        db = self._require_db()

        def _sample() -> list[dict]:
            cursor = db[entity_name].find(
                {field_name: {"$exists": True, "$ne": None}},
                {field_name: 1, "_id": 0 if field_name != "_id" else 1},
            ).limit(limit)
            return list(cursor)

        try:
            docs = await asyncio.to_thread(_sample)
        except PyMongoError as e:
            logger.warning(f"Sampling {entity_name}.{field_name} failed: {e}")
            return []

        samples = []
        for doc in docs:
            text = to_sample_text(get_dotted(doc, field_name))
            if text is not None:
                samples.append(text)
        return samples

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        require_filter(filter, "export")
        db = self._require_db()

        def _find() -> list[dict]:
            return list(db[entity_name].find(dict(filter)))

        try:
            docs = await asyncio.to_thread(_find)
        except PyMongoError as e:
            raise ConnectorError(
                f"Export from {entity_name} failed: {e}",
                connector_type=self.connector_type,
                operation="export",
            ) from e
        return [to_jsonable(doc) for doc in docs]

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        require_filter(filter, "delete")
        db = self._require_db()
        try:
            result = await asyncio.to_thread(db[entity_name].delete_many, dict(filter))
        except PyMongoError as e:
            raise ConnectorError(
                f"Delete from {entity_name} failed: {e}",
                connector_type=self.connector_type,
                operation="delete",
            ) from e
        logger.info(f"Deleted {result.deleted_count} document(s) from {entity_name}")
        return result.deleted_count

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
        self._client = None
        self._db = None

    def _require_db(self):
        if self._db is None:
            raise ConnectorError(
                "Connector is not connected",
                connector_type=self.connector_type,
                operation="query",
            )
        return self._db
