"""Tests for the MongoDB connector with a mocked pymongo client."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from datalens.connectors import DiscoveryInput, MongoDBConnector
from datalens.connectors.mongodb import flatten_document, get_dotted
from datalens.core.types import EntityType
from datalens.exceptions import ConnectionFailedError, ConnectorError, ValidationError


def _mongo_source(database="crm", config=None):
    return SimpleNamespace(
        type="MONGODB",
        host="mongo.internal",
        port=27017,
        database=database,
        credentials={},
        config=config or {},
    )


def _database(collections: dict) -> MagicMock:
    db = MagicMock()
    db.list_collection_names.return_value = list(collections)
    db.__getitem__.side_effect = lambda name: collections[name]
    return db


def _collection(docs=None, count=0) -> MagicMock:
    collection = MagicMock()
    collection.find.return_value.limit.return_value = list(docs or [])
    collection.estimated_document_count.return_value = count
    return collection


def _connector(db) -> MongoDBConnector:
    connector = MongoDBConnector()
    connector._db = db
    return connector


class TestDocumentHelpers:

    def test_flatten_document(self):
        doc = {"name": "Alice", "address": {"city": "Pune", "geo": {"lat": 18.5}}, "tags": {}}

        assert dict(flatten_document(doc)) == {
            "name": "Alice",
            "address.city": "Pune",
            "address.geo.lat": 18.5,
            "tags": {},
        }

    def test_get_dotted(self):
        doc = {"address": {"city": "Pune"}, "name": "Alice"}

        assert get_dotted(doc, "address.city") == "Pune"
        assert get_dotted(doc, "address.zip") is None
        assert get_dotted(doc, "name.first") is None


class TestMongoConnect:

    @pytest.mark.asyncio
    async def test_requires_database(self):
        with pytest.raises(ConnectionFailedError):
            await MongoDBConnector().connect(_mongo_source(database=None))

    @pytest.mark.asyncio
    async def test_ping_failure_closes_client(self):
        with patch("datalens.connectors.mongodb.MongoClient") as client_cls:
            client = client_cls.return_value
            client.admin.command.side_effect = ServerSelectionTimeoutError("no servers")

            with pytest.raises(ConnectionFailedError):
                await MongoDBConnector().connect(_mongo_source())

        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_uri_built_from_host(self):
        with patch("datalens.connectors.mongodb.MongoClient") as client_cls:
            connector = MongoDBConnector()
            await connector.connect(_mongo_source())

        assert client_cls.call_args.args[0] == "mongodb://mongo.internal:27017"
        client_cls.return_value.__getitem__.assert_called_with("crm")

    @pytest.mark.asyncio
    async def test_config_uri_wins(self):
        with patch("datalens.connectors.mongodb.MongoClient") as client_cls:
            await MongoDBConnector().connect(
                _mongo_source(config={"uri": "mongodb+srv://cluster0.example.net"})
            )

        assert client_cls.call_args.args[0] == "mongodb+srv://cluster0.example.net"


class TestMongoDiscovery:

    @pytest.mark.asyncio
    async def test_collections_sorted_without_system(self):
        db = _database({
            "users": _collection(count=12),
            "system.views": _collection(),
            "orders": _collection(count=3),
        })

        summary, entities = await _connector(db).discover_schema(DiscoveryInput())

        assert [(e.name, e.type, e.row_count) for e in entities] == [
            ("orders", EntityType.COLLECTION, 3),
            ("users", EntityType.COLLECTION, 12),
        ]
        assert summary.total_entities == 2

    @pytest.mark.asyncio
    async def test_count_failure_keeps_entity(self):
        users = _collection()
        users.estimated_document_count.side_effect = PyMongoError("not authorized")

        _, entities = await _connector(_database({"users": users})).discover_schema(DiscoveryInput())

        assert entities[0].row_count is None

    @pytest.mark.asyncio
    async def test_fields_flattened_with_nullability(self):
        users = _collection([
            {"_id": ObjectId(), "email": "alice@example.com", "address": {"city": "Pune"}},
            {"_id": ObjectId(), "email": "bob@example.com"},
        ])

        fields = await _connector(_database({"users": users})).get_fields("users")

        by_name = {f.name: f for f in fields}
        assert list(by_name) == ["_id", "email", "address.city"]
        assert by_name["_id"].is_primary_key
        assert by_name["_id"].data_type == "objectId"
        assert by_name["email"].nullable is False
        assert by_name["address.city"].nullable is True

    @pytest.mark.asyncio
    async def test_sample_dotted_field(self):
        users = _collection([{"address": {"city": "Pune"}}, {"address": {"city": None}}])

        samples = await _connector(_database({"users": users})).sample_data("users", "address.city", 5)

        assert samples == ["Pune"]

    @pytest.mark.asyncio
    async def test_sample_failure_is_empty(self):
        users = MagicMock()
        users.find.side_effect = PyMongoError("cursor killed")

        assert await _connector(_database({"users": users})).sample_data("users", "email", 5) == []


class TestMongoExportDelete:

    @pytest.mark.asyncio
    async def test_export_jsonable(self):
        oid = ObjectId()
        users = MagicMock()
        users.find.return_value = [{"_id": oid, "email": "alice@example.com"}]

        records = await _connector(_database({"users": users})).export(
            "users", {"email": "alice@example.com"}
        )

        users.find.assert_called_once_with({"email": "alice@example.com"})
        assert records == [{"_id": str(oid), "email": "alice@example.com"}]

    @pytest.mark.asyncio
    async def test_delete_returns_count(self):
        users = MagicMock()
        users.delete_many.return_value = SimpleNamespace(deleted_count=2)

        deleted = await _connector(_database({"users": users})).delete(
            "users", {"email": "alice@example.com"}
        )

        assert deleted == 2

    @pytest.mark.asyncio
    async def test_empty_filter_never_reaches_driver(self):
        users = MagicMock()

        with pytest.raises(ValidationError):
            await _connector(_database({"users": users})).delete("users", {})

        users.delete_many.assert_not_called()

    @pytest.mark.asyncio
    async def test_driver_error_wrapped(self):
        users = MagicMock()
        users.delete_many.side_effect = PyMongoError("write concern")

        with pytest.raises(ConnectorError):
            await _connector(_database({"users": users})).delete("users", {"email": "x@example.com"})

    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(ConnectorError):
            await MongoDBConnector().export("users", {"email": "x@example.com"})
