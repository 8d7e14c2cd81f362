"""
AWS S3 connector.

Objects are FILE entities named by key. CSV / JSON / JSON Lines objects
expose their columns as fields; other objects expose a single ``content``
field. Only the leading part of each object is downloaded for field
inference and sampling.

boto3 is synchronous; every call runs via ``asyncio.to_thread``.

Data source fields used:
    config.bucket (or database), config.prefix, config.region,
    config.endpoint_url (MinIO / LocalStack)
    credentials.access_key_id / secret_access_key (optional, falls back
    to the environment / IAM role)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from datalens.core.constants import MAX_OBJECTS_PER_BUCKET
from datalens.core.types import DataSourceType, EntityType
from datalens.core.utils import ensure_utc
from datalens.exceptions import ConnectionFailedError, ConnectorError, OperationNotSupportedError

from .base import (
    ConnectorCapabilities,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
    Record,
)
from .content import ParsedContent, parse_content

logger = logging.getLogger(__name__)

# Bytes downloaded per object for field inference and sampling
READ_RANGE_BYTES = 64 * 1024


class S3Connector:
    """Connector for S3 buckets and S3-compatible object stores."""

    def __init__(
        self,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        max_objects: int = MAX_OBJECTS_PER_BUCKET,
    ) -> None:
        self._default_region = region
        self._default_endpoint = endpoint_url
        self._max_objects = max_objects
        self._client = None
        self._bucket: str = ""
        self._prefix: str = ""
        self._parsed: dict[str, ParsedContent] = {}

    @property
    def connector_type(self) -> str:
        return DataSourceType.S3.value

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            can_discover=True,
            can_sample=True,
            can_export=False,
            can_delete=False,
            supports_incremental=True,
            max_concurrency=8,
        )

    async def connect(self, data_source: Any) -> None:
        if self._client is not None:
            return

        config = data_source.config or {}
        self._bucket = config.get("bucket") or data_source.database or ""
        self._prefix = config.get("prefix", "")
        if not self._bucket:
            raise ConnectionFailedError(
                "S3 data source has no bucket",
                connector_type=self.connector_type,
                operation="connect",
            )

        credentials = data_source.credentials or {}
        client = await asyncio.to_thread(
            self._build_client,
            config.get("region") or self._default_region,
            config.get("endpoint_url") or self._default_endpoint,
            credentials.get("access_key_id", ""),
            credentials.get("secret_access_key", ""),
        )
        try:
            await asyncio.to_thread(client.head_bucket, Bucket=self._bucket)
        except (BotoCoreError, ClientError) as e:
            raise ConnectionFailedError(
                f"Cannot access bucket {self._bucket}: {e}",
                connector_type=self.connector_type,
                operation="connect",
            ) from e
        self._client = client
        logger.info(f"Connected to S3 bucket {self._bucket}")

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        client = self._require_client()
        changed_since = ensure_utc(discovery_input.changed_since)

        def _list() -> list[dict]:
            objects: list[dict] = []
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=self._prefix):
                for obj in page.get("Contents", []):
                    # Skip "directory" markers
                    if obj["Key"].endswith("/"):
                        continue
                    objects.append(obj)
                    if len(objects) >= self._max_objects:
                        return objects
            return objects

        try:
            objects = await asyncio.to_thread(_list)
        except (BotoCoreError, ClientError) as e:
            raise ConnectorError(
                f"Listing bucket {self._bucket} failed: {e}",
                connector_type=self.connector_type,
                operation="discover_schema",
            ) from e

        if len(objects) >= self._max_objects:
            logger.warning(
                f"Bucket {self._bucket} listing capped at {self._max_objects} objects"
            )

        entities = []
        for obj in objects:
            modified = ensure_utc(obj.get("LastModified"))
            if changed_since is not None and modified is not None and modified <= changed_since:
                continue
            entities.append(
                DiscoveredEntity(
                    name=obj["Key"],
                    type=EntityType.FILE,
                    schema=self._bucket,
                    row_count=None,
                    modified=modified,
                )
            )
        return InventorySummary(total_entities=len(entities)), entities

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        parsed = await self._load(entity_name)
        return parsed.fields()

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        try:
            parsed = await self._load(entity_name)
        except ConnectorError as e:
            logger.warning(f"Sampling {entity_name} failed: {e}")
            return []
        return parsed.samples(field_name, limit)

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        raise OperationNotSupportedError(
            "Export is not supported for S3 objects",
            connector_type=self.connector_type,
            operation="export",
        )

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        raise OperationNotSupportedError(
            "Record-level delete is not supported for S3 objects",
            connector_type=self.connector_type,
            operation="delete",
        )

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
        self._client = None
        self._parsed.clear()

    async def _load(self, key: str) -> ParsedContent:
        if key in self._parsed:
            return self._parsed[key]
        client = self._require_client()

        def _read() -> bytes:
            response = client.get_object(
                Bucket=self._bucket, Key=key, Range=f"bytes=0-{READ_RANGE_BYTES - 1}"
            )
            return response["Body"].read()

        try:
            data = await asyncio.to_thread(_read)
        except (BotoCoreError, ClientError) as e:
            raise ConnectorError(
                f"Reading s3://{self._bucket}/{key} failed: {e}",
                connector_type=self.connector_type,
                operation="read",
            ) from e

        parsed = parse_content(key, data)
        self._parsed[key] = parsed
        return parsed

    def _require_client(self):
        if self._client is None:
            raise ConnectorError(
                "Connector is not connected",
                connector_type=self.connector_type,
                operation="query",
            )
        return self._client

    @staticmethod
    def _build_client(
        region: str,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
    ):
        kwargs: dict = {"service_name": "s3", "region_name": region}
        if access_key and secret_key:
            kwargs["aws_access_key_id"] = access_key
            kwargs["aws_secret_access_key"] = secret_key
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        return boto3.client(**kwargs)
