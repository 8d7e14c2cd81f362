"""Tests for the S3 connector with a mocked boto3 client."""

import io
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from datalens.connectors import DiscoveryInput, S3Connector
from datalens.connectors.content import CONTENT_FIELD
from datalens.core.types import EntityType
from datalens.exceptions import ConnectionFailedError, OperationNotSupportedError

OLD = datetime(2024, 1, 1, tzinfo=timezone.utc)
NEW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _bucket_source(bucket="customer-exports", prefix=""):
    return SimpleNamespace(
        type="S3",
        database=None,
        credentials={"access_key_id": "AKIA", "secret_access_key": "secret"},
        config={"bucket": bucket, "prefix": prefix},
    )


def _mock_client(objects, bodies=None):
    """boto3 client mock: one page of ``objects``, ``bodies`` keyed by object key."""
    bodies = bodies or {}
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [{"Contents": objects}]
    client.get_object.side_effect = lambda Bucket, Key, Range: {"Body": io.BytesIO(bodies[Key])}
    return client


@pytest.fixture
def s3_client():
    return _mock_client(
        [
            {"Key": "exports/", "LastModified": OLD},
            {"Key": "exports/users.csv", "LastModified": NEW},
            {"Key": "exports/notes.txt", "LastModified": OLD},
        ],
        {
            "exports/users.csv": b"email,phone\nalice@example.com,415-555-0100\n",
            "exports/notes.txt": b"call bob@example.com",
        },
    )


async def _connected(client, **kwargs) -> S3Connector:
    connector = S3Connector(**kwargs)
    with patch.object(S3Connector, "_build_client", return_value=client):
        await connector.connect(_bucket_source())
    return connector


class TestS3Connect:

    @pytest.mark.asyncio
    async def test_no_bucket(self):
        source = SimpleNamespace(type="S3", database=None, credentials={}, config={})

        with pytest.raises(ConnectionFailedError):
            await S3Connector().connect(source)

    @pytest.mark.asyncio
    async def test_head_bucket_failure(self):
        client = MagicMock()
        client.head_bucket.side_effect = ClientError(
            {"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadBucket"
        )

        with pytest.raises(ConnectionFailedError):
            await _connected(client)

    @pytest.mark.asyncio
    async def test_client_built_with_settings_defaults(self, s3_client):
        connector = S3Connector(region="eu-west-1", endpoint_url="http://localhost:9000")

        with patch.object(S3Connector, "_build_client", return_value=s3_client) as build:
            await connector.connect(_bucket_source())

        build.assert_called_once_with("eu-west-1", "http://localhost:9000", "AKIA", "secret")
        s3_client.head_bucket.assert_called_once_with(Bucket="customer-exports")


class TestS3Discovery:

    @pytest.mark.asyncio
    async def test_objects_are_file_entities(self, s3_client):
        connector = await _connected(s3_client)

        summary, entities = await connector.discover_schema(DiscoveryInput())

        assert [e.name for e in entities] == ["exports/users.csv", "exports/notes.txt"]
        assert all(e.type == EntityType.FILE for e in entities)
        assert entities[0].schema == "customer-exports"
        assert summary.total_entities == 2

    @pytest.mark.asyncio
    async def test_incremental_skips_unchanged(self, s3_client):
        connector = await _connected(s3_client)

        _, entities = await connector.discover_schema(
            DiscoveryInput(changed_since=datetime(2024, 3, 1))
        )

        assert [e.name for e in entities] == ["exports/users.csv"]

    @pytest.mark.asyncio
    async def test_listing_capped(self, s3_client):
        connector = await _connected(s3_client, max_objects=1)

        _, entities = await connector.discover_schema(DiscoveryInput())

        assert len(entities) == 1

    @pytest.mark.asyncio
    async def test_csv_object_fields_and_samples(self, s3_client):
        connector = await _connected(s3_client)

        fields = await connector.get_fields("exports/users.csv")
        samples = await connector.sample_data("exports/users.csv", "email", 10)

        assert [f.name for f in fields] == ["email", "phone"]
        assert samples == ["alice@example.com"]
        # Parsed content is cached per key
        assert s3_client.get_object.call_count == 1

    @pytest.mark.asyncio
    async def test_text_object_content_field(self, s3_client):
        connector = await _connected(s3_client)

        fields = await connector.get_fields("exports/notes.txt")

        assert [f.name for f in fields] == [CONTENT_FIELD]
        assert await connector.sample_data("exports/notes.txt", CONTENT_FIELD, 1) == [
            "call bob@example.com"
        ]

    @pytest.mark.asyncio
    async def test_sample_read_failure_is_empty(self, s3_client):
        s3_client.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "GetObject"
        )
        connector = await _connected(s3_client)

        assert await connector.sample_data("exports/users.csv", "email", 10) == []


class TestS3Unsupported:

    @pytest.mark.asyncio
    async def test_export_and_delete(self, s3_client):
        connector = await _connected(s3_client)

        with pytest.raises(OperationNotSupportedError):
            await connector.export("exports/users.csv", {"email": "alice@example.com"})
        with pytest.raises(OperationNotSupportedError):
            await connector.delete("exports/users.csv", {"email": "alice@example.com"})

    @pytest.mark.asyncio
    async def test_close_releases_client(self, s3_client):
        connector = await _connected(s3_client)

        await connector.close()

        s3_client.close.assert_called_once()
        assert connector._client is None
