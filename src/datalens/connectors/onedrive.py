"""
OneDrive / Microsoft 365 connector via Microsoft Graph API.

Files in the drive are FILE entities named by their path from the drive
root. Each file exposes a single ``content`` field; small text files are
downloaded for sampling. Incremental discovery skips files whose
``lastModifiedDateTime`` is not newer than the cutoff but always walks
into folders, since a folder's timestamp does not track its children.

Export and record-level delete are not supported; ERASURE against these
sources goes through the manual deletion path.

Data source fields used:
    credentials.tenant_id / client_id / client_secret
    credentials.refresh_token   delegated access to the signed-in user's drive
    config.user_id              drive owner for app-only access
"""

import logging
from collections.abc import Mapping
from typing import Any

from datalens.core.constants import MAX_OBJECTS_PER_BUCKET, MAX_SAMPLE_CHARS
from datalens.core.types import DataSourceType, EntityType
from datalens.core.utils import ensure_utc
from datalens.exceptions import ConnectorError, GraphAPIError, OperationNotSupportedError

from .base import (
    ConnectorCapabilities,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
    Record,
)
from .content import CONTENT_FIELD, MAX_DOWNLOAD_BYTES, TEXT_EXTENSIONS, extension_of
from .graph_base import GraphConnectorBase, parse_graph_datetime

logger = logging.getLogger(__name__)


class OneDriveConnector(GraphConnectorBase):
    """Connector for a single OneDrive for Business drive."""

    def __init__(
        self,
        source_type: str = DataSourceType.ONEDRIVE.value,
        base_url: str | None = None,
        token_url: str | None = None,
        max_retries: int | None = None,
        max_items: int = MAX_OBJECTS_PER_BUCKET,
    ) -> None:
        super().__init__(source_type, base_url=base_url, token_url=token_url, max_retries=max_retries)
        self._max_items = max_items
        self._drive_path = "/me/drive"
        # entity name (path) -> drive item
        self._items: dict[str, dict[str, Any]] = {}

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            can_discover=True,
            can_sample=True,
            can_export=False,
            can_delete=False,
            supports_incremental=True,
            max_concurrency=4,
        )

    async def connect(self, data_source: Any) -> None:
        if self._client is not None:
            return
        self._drive_path = f"{self._resolve_principal(data_source)}/drive"
        drive = await self._open_client(data_source, self._drive_path)
        logger.info(f"Connected to drive {drive.get('id', self._drive_path)}")

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        client = self._require_client()
        changed_since = ensure_utc(discovery_input.changed_since)
        self._items.clear()

        entities: list[DiscoveredEntity] = []
        # (graph path, folder prefix); iterative walk from the root
        pending = [(f"{self._drive_path}/root/children", "")]
        try:
            while pending and len(entities) < self._max_items:
                path, prefix = pending.pop(0)
                for item in await client.get_all_pages(path):
                    name = f"{prefix}{item.get('name', item.get('id', ''))}"
                    if "folder" in item:
                        pending.append(
                            (f"{self._drive_path}/items/{item['id']}/children", f"{name}/")
                        )
                        continue
                    if "file" not in item:
                        continue
                    modified = parse_graph_datetime(item.get("lastModifiedDateTime"))
                    if changed_since is not None and modified is not None and modified <= changed_since:
                        continue
                    self._items[name] = item
                    entities.append(
                        DiscoveredEntity(
                            name=name,
                            type=EntityType.FILE,
                            schema=prefix.rstrip("/") or None,
                            modified=modified,
                        )
                    )
                    if len(entities) >= self._max_items:
                        logger.warning(f"Drive listing capped at {self._max_items} files")
                        break
        except GraphAPIError as e:
            raise ConnectorError(
                f"Listing drive failed: {e.message}",
                connector_type=self._source_type,
                operation="discover_schema",
            ) from e

        return InventorySummary(total_entities=len(entities)), entities

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        return [DiscoveredField(name=CONTENT_FIELD, data_type="text")]

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        if limit <= 0 or field_name != CONTENT_FIELD:
            return []
        item = self._items.get(entity_name)
        if item is None:
            return []
        if extension_of(item.get("name", "")) not in TEXT_EXTENSIONS:
            return []
        if (item.get("size") or 0) > MAX_DOWNLOAD_BYTES:
            return []

        client = self._require_client()
        try:
            data = await client.get_bytes(f"{self._drive_path}/items/{item['id']}/content")
        except GraphAPIError as e:
            logger.warning(f"Downloading {entity_name} failed: {e.message}")
            return []
        text = data.decode("utf-8", errors="replace")[:MAX_SAMPLE_CHARS].strip()
        return [text] if text else []

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        raise OperationNotSupportedError(
            "Export is not supported for drive files",
            connector_type=self._source_type,
            operation="export",
        )

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        raise OperationNotSupportedError(
            "Record-level delete is not supported for drive files",
            connector_type=self._source_type,
            operation="delete",
        )

    async def close(self) -> None:
        await super().close()
        self._items.clear()
