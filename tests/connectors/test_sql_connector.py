"""
Tests for the SQLAlchemy connector against a real SQLite file.

Tests focus on:
- URL building per dialect
- Schema discovery (tables before views, sorted)
- Column metadata and sampling
- Filtered export and delete, including filter validation
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from datalens.connectors import DiscoveryInput, SQLConnector
from datalens.connectors.sql import build_url
from datalens.core.types import EntityType
from datalens.exceptions import ConnectionFailedError, ConnectorError, ValidationError


def _source(source_type="SQLITE", database=None, config=None, **kwargs):
    return SimpleNamespace(
        type=source_type,
        host=kwargs.get("host"),
        port=kwargs.get("port"),
        database=database,
        credentials=kwargs.get("credentials", {}),
        config=config or {},
    )


@pytest.fixture
async def crm_db(tmp_path):
    """SQLite file with customers, orders and a view."""
    path = tmp_path / "crm.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.execute(text(
            "CREATE TABLE customers ("
            " id INTEGER PRIMARY KEY,"
            " email VARCHAR(255) NOT NULL,"
            " phone VARCHAR(32),"
            " created_at TIMESTAMP)"
        ))
        await conn.execute(text(
            "CREATE TABLE orders ("
            " id INTEGER PRIMARY KEY,"
            " customer_id INTEGER REFERENCES customers(id),"
            " total NUMERIC)"
        ))
        await conn.execute(text("CREATE VIEW active_customers AS SELECT id, email FROM customers"))
        await conn.execute(text(
            "INSERT INTO customers (id, email, phone) VALUES"
            " (1, 'alice@example.com', '415-555-0100'),"
            " (2, 'bob@example.com', NULL),"
            " (3, 'alice@example.com', '415-555-0101')"
        ))
        await conn.execute(text("INSERT INTO orders (id, customer_id, total) VALUES (10, 1, 12.5)"))
    await engine.dispose()
    return str(path)


@pytest.fixture
async def connector(crm_db):
    connector = SQLConnector("SQLITE")
    await connector.connect(_source(database=crm_db))
    yield connector
    await connector.close()


class TestBuildUrl:

    def test_postgres_url(self):
        url = build_url(_source(
            "postgres",
            database="crm",
            host="db.internal",
            port=5432,
            credentials={"username": "scanner", "password": "s3cret"},
        ))

        assert url.drivername == "postgresql+asyncpg"
        assert url.host == "db.internal"
        assert url.port == 5432
        assert url.username == "scanner"
        assert url.database == "crm"

    def test_sqlite_uses_database_as_path(self):
        url = build_url(_source(database="/data/app.db"))

        assert url.drivername == "sqlite+aiosqlite"
        assert url.database == "/data/app.db"

    def test_sqlserver_sets_odbc_driver(self):
        url = build_url(_source("MSSQL", database="hr", host="sql01"))

        assert url.drivername == "mssql+aioodbc"
        assert url.query["driver"] == "ODBC Driver 18 for SQL Server"

    def test_config_url_overrides(self):
        url = build_url(_source("POSTGRESQL", config={"url": "sqlite+aiosqlite:///other.db"}))

        assert url.drivername == "sqlite+aiosqlite"

    def test_non_sql_type_rejected(self):
        with pytest.raises(ConnectionFailedError):
            build_url(_source("MONGODB"))


class TestConnect:

    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path):
        connector = SQLConnector("SQLITE")

        with pytest.raises(ConnectionFailedError):
            await connector.connect(_source(database=str(tmp_path / "missing" / "x.db")))

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, crm_db):
        connector = SQLConnector("SQLITE")
        await connector.connect(_source(database=crm_db))
        engine = connector._engine
        await connector.connect(_source(database=crm_db))

        assert connector._engine is engine
        await connector.close()

    @pytest.mark.asyncio
    async def test_calls_before_connect_fail(self):
        with pytest.raises(ConnectorError):
            await SQLConnector("SQLITE").get_fields("customers")


class TestDiscovery:

    @pytest.mark.asyncio
    async def test_tables_then_views(self, connector):
        summary, entities = await connector.discover_schema(DiscoveryInput())

        assert [(e.name, e.type) for e in entities] == [
            ("customers", EntityType.TABLE),
            ("orders", EntityType.TABLE),
            ("active_customers", EntityType.VIEW),
        ]
        assert summary.total_entities == 3

    @pytest.mark.asyncio
    async def test_fields_with_keys(self, connector):
        fields = {f.name: f for f in await connector.get_fields("orders")}

        assert fields["id"].is_primary_key
        assert fields["customer_id"].is_foreign_key
        assert not fields["total"].is_primary_key

    @pytest.mark.asyncio
    async def test_nullable(self, connector):
        fields = {f.name: f for f in await connector.get_fields("customers")}

        assert fields["email"].nullable is False
        assert fields["phone"].nullable is True

    @pytest.mark.asyncio
    async def test_unknown_entity(self, connector):
        with pytest.raises(ConnectorError):
            await connector.get_fields("no_such_table")

    @pytest.mark.asyncio
    async def test_sample_skips_nulls(self, connector):
        samples = await connector.sample_data("customers", "phone", 10)

        assert sorted(samples) == ["415-555-0100", "415-555-0101"]

    @pytest.mark.asyncio
    async def test_sample_respects_limit(self, connector):
        assert len(await connector.sample_data("customers", "email", 2)) == 2
        assert await connector.sample_data("customers", "email", 0) == []


class TestExportAndDelete:

    @pytest.mark.asyncio
    async def test_export_matches_filter(self, connector):
        records = await connector.export("customers", {"email": "alice@example.com"})

        assert sorted(r["id"] for r in records) == [1, 3]
        assert set(records[0]) == {"id", "email", "phone", "created_at"}

    @pytest.mark.asyncio
    async def test_export_with_two_keys(self, connector):
        records = await connector.export(
            "customers", {"email": "alice@example.com", "phone": "415-555-0101"}
        )

        assert [r["id"] for r in records] == [3]

    @pytest.mark.asyncio
    async def test_empty_filter_refused(self, connector):
        with pytest.raises(ValidationError):
            await connector.export("customers", {})
        with pytest.raises(ValidationError):
            await connector.delete("customers", {})

    @pytest.mark.asyncio
    async def test_unknown_filter_column(self, connector):
        with pytest.raises(ValidationError):
            await connector.delete("customers", {"ssn": "123-45-6789"})

    @pytest.mark.asyncio
    async def test_delete_returns_count(self, connector):
        deleted = await connector.delete("customers", {"email": "alice@example.com"})

        assert deleted == 2
        remaining = await connector.export("customers", {"email": "bob@example.com"})
        assert [r["id"] for r in remaining] == [2]

    @pytest.mark.asyncio
    async def test_delete_no_match(self, connector):
        assert await connector.delete("customers", {"email": "carol@example.com"}) == 0
