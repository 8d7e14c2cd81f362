"""
Data source connectors.

Provides:
- Connector: protocol every backend implements
- ConnectorRegistry: data source type -> connector factory
- SQLConnector: PostgreSQL, MySQL, SQL Server, SQLite via SQLAlchemy
- MongoDBConnector: MongoDB via pymongo
- S3Connector: S3 buckets via boto3
- GraphConnectorBase: client handling shared by Graph API connectors
- OneDriveConnector: OneDrive / Microsoft 365 via Graph API
- OutlookConnector: Exchange Online mailboxes via Graph API
- FileUploadConnector: single uploaded file
- build_default_registry: registry with every built-in connector
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from datalens.core.types import DataSourceType

from .base import (
    Connector,
    ConnectorCapabilities,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
    Record,
    call_with_timeout,
    close_connector,
)
from .file_upload import FileUploadConnector
from .graph_base import GraphConnectorBase
from .graph_client import GraphClient
from .mongodb import MongoDBConnector
from .onedrive import OneDriveConnector
from .outlook import OutlookConnector
from .registry import ConnectorFactory, ConnectorRegistry
from .s3 import S3Connector
from .sql import SQLConnector

if TYPE_CHECKING:
    from datalens.server.config import ConnectorSettings

__all__ = [
    "Connector",
    "ConnectorCapabilities",
    "ConnectorFactory",
    "ConnectorRegistry",
    "DiscoveredEntity",
    "DiscoveredField",
    "DiscoveryInput",
    "InventorySummary",
    "Record",
    "call_with_timeout",
    "close_connector",
    "SQLConnector",
    "MongoDBConnector",
    "S3Connector",
    "OneDriveConnector",
    "OutlookConnector",
    "FileUploadConnector",
    "GraphConnectorBase",
    "GraphClient",
    "build_default_registry",
]


def build_default_registry(settings: "ConnectorSettings | None" = None) -> ConnectorRegistry:
    """Register every built-in connector, configured from settings."""
    if settings is None:
        from datalens.server.config import get_settings

        settings = get_settings().connectors

    registry = ConnectorRegistry()
    for source_type in (
        DataSourceType.POSTGRESQL,
        DataSourceType.MYSQL,
        DataSourceType.SQLSERVER,
        DataSourceType.SQLITE,
    ):
        registry.register(source_type, partial(SQLConnector, source_type.value))

    registry.register(DataSourceType.MONGODB, MongoDBConnector)
    registry.register(
        DataSourceType.S3,
        partial(S3Connector, region=settings.s3.region, endpoint_url=settings.s3.endpoint_url),
    )
    for source_type in (DataSourceType.ONEDRIVE, DataSourceType.MICROSOFT_365):
        registry.register(
            source_type,
            partial(
                OneDriveConnector,
                source_type.value,
                base_url=settings.graph.base_url,
                token_url=settings.graph.token_url,
                max_retries=settings.graph.max_retries,
            ),
        )
    registry.register(
        DataSourceType.OUTLOOK,
        partial(
            OutlookConnector,
            base_url=settings.graph.base_url,
            token_url=settings.graph.token_url,
            max_retries=settings.graph.max_retries,
        ),
    )
    registry.register(DataSourceType.FILE_UPLOAD, FileUploadConnector)
    return registry
