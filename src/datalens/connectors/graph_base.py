"""
Base class for Microsoft Graph API connectors.

Shared between the OneDrive and Outlook connectors:
- GraphClient construction from data source credentials
- Client lifecycle (open and verify on connect, close)
- Graph timestamp parsing
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional

from datalens.core.types import normalize_data_source_type
from datalens.core.utils import ensure_utc
from datalens.exceptions import ConnectionFailedError, ConnectorError, GraphAPIError

from .graph_client import GraphClient

logger = logging.getLogger(__name__)


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 Graph timestamp (``2024-06-01T10:00:00Z``) as UTC."""
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.debug(f"Unparseable Graph timestamp: {value}")
        return None


class GraphConnectorBase:
    """
    Client handling for connectors that talk to Microsoft Graph.

    Subclasses resolve their resource path from the data source and call
    ``_open_client`` with a path to GET as the connectivity check.
    """

    def __init__(
        self,
        source_type: str,
        base_url: Optional[str] = None,
        token_url: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self._source_type = normalize_data_source_type(source_type)
        self._base_url = base_url
        self._token_url = token_url
        self._max_retries = max_retries
        self._client: Optional[GraphClient] = None

    @property
    def connector_type(self) -> str:
        return self._source_type

    def _build_client(self, credentials: Mapping[str, Any]) -> GraphClient:
        kwargs: dict[str, Any] = {}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        if self._token_url:
            kwargs["token_url"] = self._token_url
        if self._max_retries is not None:
            kwargs["max_retries"] = self._max_retries
        return GraphClient(
            tenant_id=credentials.get("tenant_id", ""),
            client_id=credentials.get("client_id", ""),
            client_secret=credentials.get("client_secret", ""),
            refresh_token=credentials.get("refresh_token") or None,
            **kwargs,
        )

    def _resolve_principal(self, data_source: Any) -> str:
        """
        Return the Graph path of the user the connector acts for.

        ``/me`` with a delegated refresh token, ``/users/{config.user_id}``
        for app-only access.
        """
        self._source_type = normalize_data_source_type(data_source.type)
        credentials = data_source.credentials or {}
        config = data_source.config or {}
        if not credentials.get("client_id"):
            raise ConnectionFailedError(
                "Microsoft Graph data source has no client_id",
                connector_type=self._source_type,
                operation="connect",
            )

        user_id = config.get("user_id")
        if user_id:
            return f"/users/{user_id}"
        if not credentials.get("refresh_token"):
            raise ConnectionFailedError(
                "App-only access needs config.user_id to locate the user",
                connector_type=self._source_type,
                operation="connect",
            )
        return "/me"

    async def _open_client(self, data_source: Any, check_path: str) -> dict[str, Any]:
        """Open a GraphClient, GET *check_path* and keep the client on success."""
        client = self._build_client(data_source.credentials or {})
        await client.__aenter__()
        try:
            resource = await client.get(check_path)
        except GraphAPIError as e:
            await client.__aexit__(None, None, None)
            raise ConnectionFailedError(
                f"Cannot access {check_path}: {e.message}",
                connector_type=self._source_type,
                operation="connect",
            ) from e
        self._client = client
        return resource

    async def close(self) -> None:
        if self._client is not None:
            await self._client.__aexit__(None, None, None)
            self._client = None

    def _require_client(self) -> GraphClient:
        if self._client is None:
            raise ConnectorError(
                "Connector is not connected",
                connector_type=self._source_type,
                operation="query",
            )
        return self._client
