"""Tests for the OneDrive / Microsoft 365 connector over a mocked Graph API."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from datalens.connectors import DiscoveryInput, OneDriveConnector
from datalens.connectors.content import CONTENT_FIELD
from datalens.connectors.graph_client import GraphClient
from datalens.core.types import EntityType
from datalens.exceptions import ConnectionFailedError, OperationNotSupportedError

DRIVE = "/v1.0/users/alice/drive"


def _drive_source(source_type="ONEDRIVE", user_id="alice", refresh_token=None):
    credentials = {"tenant_id": "contoso", "client_id": "app-id", "client_secret": "secret"}
    if refresh_token:
        credentials["refresh_token"] = refresh_token
    return SimpleNamespace(
        type=source_type,
        credentials=credentials,
        config={"user_id": user_id} if user_id else {},
    )


def _drive_handler(extra=None):
    """Drive with one root file, one folder holding a file, and a notebook package."""
    routes = {
        DRIVE: {"id": "drive-1"},
        f"{DRIVE}/root/children": {"value": [
            {"id": "f1", "name": "customers.csv", "file": {}, "size": 60,
             "lastModifiedDateTime": "2024-06-01T10:00:00Z"},
            {"id": "d1", "name": "HR", "folder": {"childCount": 1}},
            {"id": "p1", "name": "Notebook", "package": {"type": "oneNote"}},
        ]},
        f"{DRIVE}/items/d1/children": {"value": [
            {"id": "f2", "name": "salaries.xlsx", "file": {}, "size": 9000,
             "lastModifiedDateTime": "2024-01-01T10:00:00Z"},
        ]},
    }
    routes.update(extra or {})

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.test":
            return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
        path = request.url.path
        if path == f"{DRIVE}/items/f1/content":
            return httpx.Response(200, content=b"email\nalice@example.com\n")
        if path in routes:
            return httpx.Response(200, json=routes[path])
        return httpx.Response(404, json={"error": {"code": "itemNotFound"}})

    return handler


def _graph(handler) -> GraphClient:
    return GraphClient(
        tenant_id="contoso",
        client_id="app-id",
        client_secret="secret",
        base_url="https://graph.test/v1.0",
        token_url="https://login.test/{tenant_id}/token",
        base_backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


async def _connected(handler=None, **source_kwargs) -> OneDriveConnector:
    connector = OneDriveConnector()
    graph = _graph(handler or _drive_handler())
    with patch.object(OneDriveConnector, "_build_client", return_value=graph):
        await connector.connect(_drive_source(**source_kwargs))
    return connector


class TestOneDriveConnect:

    @pytest.mark.asyncio
    async def test_requires_client_id(self):
        source = SimpleNamespace(type="ONEDRIVE", credentials={}, config={"user_id": "alice"})

        with pytest.raises(ConnectionFailedError):
            await OneDriveConnector().connect(source)

    @pytest.mark.asyncio
    async def test_app_only_requires_user_id(self):
        with pytest.raises(ConnectionFailedError):
            await OneDriveConnector().connect(_drive_source(user_id=None))

    @pytest.mark.asyncio
    async def test_drive_not_found(self):
        def handler(request):
            if request.url.host == "login.test":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(404)

        with pytest.raises(ConnectionFailedError):
            await _connected(handler)

    @pytest.mark.asyncio
    async def test_delegated_uses_me_drive(self):
        connector = OneDriveConnector()
        stub_routes = {"/v1.0/me/drive": {"id": "mine"}}

        def handler(request):
            if request.url.host == "login.test":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(200, json=stub_routes[request.url.path])

        with patch.object(OneDriveConnector, "_build_client", return_value=_graph(handler)):
            await connector.connect(_drive_source(user_id=None, refresh_token="rt"))

        assert connector._drive_path == "/me/drive"
        await connector.close()

    @pytest.mark.asyncio
    async def test_source_type_from_record(self):
        connector = await _connected(source_type="m365")

        assert connector.connector_type == "MICROSOFT_365"
        await connector.close()


class TestOneDriveDiscovery:

    @pytest.mark.asyncio
    async def test_walks_folders(self):
        connector = await _connected()

        summary, entities = await connector.discover_schema(DiscoveryInput())

        assert [(e.name, e.schema) for e in entities] == [
            ("customers.csv", None),
            ("HR/salaries.xlsx", "HR"),
        ]
        assert all(e.type == EntityType.FILE for e in entities)
        assert summary.total_entities == 2
        await connector.close()

    @pytest.mark.asyncio
    async def test_incremental_still_walks_old_folders(self):
        connector = await _connected()

        _, entities = await connector.discover_schema(
            DiscoveryInput(changed_since=datetime(2024, 3, 1, tzinfo=timezone.utc))
        )

        assert [e.name for e in entities] == ["customers.csv"]
        await connector.close()

    @pytest.mark.asyncio
    async def test_single_content_field(self):
        connector = await _connected()

        fields = await connector.get_fields("customers.csv")

        assert [f.name for f in fields] == [CONTENT_FIELD]
        await connector.close()

    @pytest.mark.asyncio
    async def test_text_file_sampled(self):
        connector = await _connected()
        await connector.discover_schema(DiscoveryInput())

        samples = await connector.sample_data("customers.csv", CONTENT_FIELD, 5)

        assert samples == ["email\nalice@example.com"]
        await connector.close()

    @pytest.mark.asyncio
    async def test_binary_file_not_downloaded(self):
        connector = await _connected()
        await connector.discover_schema(DiscoveryInput())

        assert await connector.sample_data("HR/salaries.xlsx", CONTENT_FIELD, 5) == []
        await connector.close()

    @pytest.mark.asyncio
    async def test_export_and_delete_not_supported(self):
        connector = await _connected()

        with pytest.raises(OperationNotSupportedError):
            await connector.export("customers.csv", {"email": "alice@example.com"})
        with pytest.raises(OperationNotSupportedError):
            await connector.delete("customers.csv", {"email": "alice@example.com"})
        await connector.close()
