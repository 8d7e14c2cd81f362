"""
Uploaded file connector.

An upload is one FILE entity. CSV uploads expose their header columns as
fields; any other upload exposes a single ``content`` field whose sample
is the leading text of the file. Uploads are immutable snapshots so
export and delete are not supported.

Data source fields used:
    config.file_path       location of the stored upload
    config.original_name   entity name (defaults to "uploaded_file")
    config.mime_type       "text/csv" marks a CSV upload without extension
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from datalens.core.types import DataSourceType, EntityType
from datalens.exceptions import ConnectionFailedError, ConnectorError, OperationNotSupportedError

from .base import (
    ConnectorCapabilities,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
    Record,
)
from .content import ParsedContent, extension_of, parse_content

logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = "uploaded_file"

# Bytes read for field inference and sampling
READ_LIMIT_BYTES = 64 * 1024


class FileUploadConnector:
    """Connector for a single uploaded file."""

    def __init__(self) -> None:
        self._path: Path | None = None
        self._name: str = DEFAULT_FILE_NAME
        self._mime_type: str = ""
        self._parsed: ParsedContent | None = None

    @property
    def connector_type(self) -> str:
        return DataSourceType.FILE_UPLOAD.value

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            can_discover=True,
            can_sample=True,
            can_export=False,
            can_delete=False,
            supports_incremental=False,
            max_concurrency=1,
        )

    async def connect(self, data_source: Any) -> None:
        config = data_source.config or {}
        file_path = config.get("file_path")
        if not file_path:
            raise ConnectionFailedError(
                "Upload has no file_path",
                connector_type=self.connector_type,
                operation="connect",
            )
        path = Path(file_path)
        if not await asyncio.to_thread(path.is_file):
            raise ConnectionFailedError(
                f"Uploaded file not found: {path}",
                connector_type=self.connector_type,
                operation="connect",
            )
        self._path = path
        self._name = config.get("original_name") or DEFAULT_FILE_NAME
        self._mime_type = config.get("mime_type", "")
        self._parsed = None

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        path = self._require_path()
        stat = await asyncio.to_thread(path.stat)
        entity = DiscoveredEntity(
            name=self._name,
            type=EntityType.FILE,
            modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )
        return InventorySummary(total_entities=1), [entity]

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        parsed = await self._load()
        return parsed.fields()

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        if entity_name != self._name:
            return []
        try:
            parsed = await self._load()
        except ConnectorError as e:
            logger.warning(f"Sampling upload {self._name} failed: {e}")
            return []
        return parsed.samples(field_name, limit)

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        raise OperationNotSupportedError(
            "Export is not supported for uploaded files",
            connector_type=self.connector_type,
            operation="export",
        )

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        raise OperationNotSupportedError(
            "Delete is not supported for uploaded files",
            connector_type=self.connector_type,
            operation="delete",
        )

    async def close(self) -> None:
        self._path = None
        self._parsed = None

    def _parse_name(self) -> str:
        """Name whose extension selects the parser."""
        if extension_of(self._name):
            return self._name
        if self._mime_type == "text/csv":
            return f"{self._name}.csv"
        return self._path.name if self._path else self._name

    async def _load(self) -> ParsedContent:
        if self._parsed is not None:
            return self._parsed
        path = self._require_path()

        def _read() -> bytes:
            with path.open("rb") as f:
                return f.read(READ_LIMIT_BYTES)

        try:
            data = await asyncio.to_thread(_read)
        except OSError as e:
            raise ConnectorError(
                f"Reading upload {path} failed: {e}",
                connector_type=self.connector_type,
                operation="read",
            ) from e

        parsed = parse_content(self._parse_name(), data)
        if parsed.is_structured and extension_of(self._parse_name()) != ".csv":
            # Uploads only get column treatment for CSV
            parsed = ParsedContent(text=parsed.text)
        self._parsed = parsed
        return parsed

    def _require_path(self) -> Path:
        if self._path is None:
            raise ConnectorError(
                "Connector is not connected",
                connector_type=self.connector_type,
                operation="query",
            )
        return self._path
