"""Unit tests for db.py - PostgreSQL resource store."""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from db import ConflictError, DatabaseManager
from models import StatusBlock


@pytest.fixture
def db_manager():
    return DatabaseManager(
        host="localhost",
        port=5432,
        database="testdb",
        user="testuser",
        password="testpass",
    )


@pytest.fixture
def conn(mock_connection):
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    mock_connection.transaction.return_value = transaction
    return mock_connection


@pytest.fixture
def connected(db_manager, mock_pool, conn):
    @asynccontextmanager
    async def acquire():
        yield conn

    mock_pool.acquire = acquire
    db_manager.pool = mock_pool
    return db_manager


def make_row(**overrides):
    row = {
        "id": 1,
        "namespace": "default",
        "name": "site",
        "kind": "Website",
        "spec": '{"site": {"domain": "a.com"}}',
        "generation": 2,
        "resource_version": 5,
        "finalizers": '["http.reconcile/website"]',
        "deleted_at": None,
        "status": json.dumps(StatusBlock(consecutive_failures=1).to_dict()),
        "created_at": None,
        "updated_at": None,
    }
    row.update(overrides)
    return row


class TestDatabaseManager:
    """Tests for connection handling and row parsing."""

    def test_init(self, db_manager):
        assert db_manager.host == "localhost"
        assert db_manager.min_pool_size == 5
        assert db_manager.pool is None

    def test_ensure_connected(self, db_manager):
        with pytest.raises(RuntimeError, match="not connected"):
            db_manager._ensure_connected()

    def test_parse_resource_row_decodes_json(self, db_manager):
        record = db_manager._parse_resource_row(make_row())

        assert record.spec == {"site": {"domain": "a.com"}}
        assert record.finalizers == ["http.reconcile/website"]
        assert record.status.consecutive_failures == 1
        assert record.generation == 2
        assert record.resource_version == 5
        assert record.is_deleting is False

    def test_parse_resource_row_accepts_decoded_json(self, db_manager):
        deleted_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        record = db_manager._parse_resource_row(
            make_row(spec={"a": 1}, finalizers=[], status=None, deleted_at=deleted_at)
        )

        assert record.spec == {"a": 1}
        assert record.finalizers == []
        assert record.status == StatusBlock()
        assert record.is_deleting is True


@pytest.mark.asyncio
class TestConnection:
    """Tests for connect/close/initialize_schema."""

    async def test_connect_creates_pool(self, db_manager):
        with patch("db.asyncpg.create_pool", new=AsyncMock()) as create_pool:
            await db_manager.connect()

        create_pool.assert_awaited_once()
        assert create_pool.call_args.kwargs["database"] == "testdb"
        assert db_manager.pool is create_pool.return_value

    async def test_close(self, db_manager, mock_pool):
        db_manager.pool = mock_pool
        await db_manager.close()
        mock_pool.close.assert_awaited_once()

    async def test_initialize_schema_runs_migrations(self, connected):
        with patch("db.run_migrations", new=AsyncMock()) as run:
            await connected.initialize_schema()
        run.assert_awaited_once_with(connected.pool)

    async def test_initialize_schema_requires_pool(self, db_manager):
        with pytest.raises(RuntimeError):
            await db_manager.initialize_schema()


@pytest.mark.asyncio
class TestAuthorWrites:
    """Tests for create/update/delete."""

    async def test_create_resource(self, connected, conn):
        conn.fetchval.return_value = 42

        resource_id = await connected.create_resource(
            "default", "site", "Website", {"a": 1}
        )

        assert resource_id == 42
        args = conn.fetchval.call_args[0]
        assert args[1:4] == ("default", "site", "Website")
        assert json.loads(args[4]) == {"a": 1}
        assert json.loads(args[5]) == []
        assert json.loads(args[6]) == StatusBlock().to_dict()

    async def test_update_spec_returns_generation(self, connected, conn):
        conn.fetchrow.return_value = {"deleted_at": None, "resource_version": 3}
        conn.fetchval.return_value = 4

        generation = await connected.update_resource_spec(1, {"a": 2}, 3)

        assert generation == 4
        assert "FOR UPDATE" in conn.fetchrow.call_args[0][0]
        assert json.loads(conn.fetchval.call_args[0][1]) == {"a": 2}

    async def test_update_spec_version_mismatch(self, connected, conn):
        conn.fetchrow.return_value = {"deleted_at": None, "resource_version": 9}

        with pytest.raises(ConflictError):
            await connected.update_resource_spec(1, {"a": 2}, expected_version=3)
        conn.fetchval.assert_not_called()

    async def test_update_spec_missing(self, connected, conn):
        conn.fetchrow.return_value = None
        with pytest.raises(ConflictError):
            await connected.update_resource_spec(1, {"a": 2})

    async def test_update_spec_while_deleting(self, connected, conn):
        conn.fetchrow.return_value = {
            "deleted_at": datetime.now(timezone.utc),
            "resource_version": 3,
        }
        with pytest.raises(ValueError, match="being deleted"):
            await connected.update_resource_spec(1, {"a": 2})

    async def test_delete_without_finalizers_purges(self, connected, conn):
        conn.fetchval.side_effect = [1, 1]

        assert await connected.delete_resource(1) is True
        assert "COALESCE(deleted_at, NOW())" in conn.fetchval.call_args_list[0][0][0]

    async def test_delete_with_finalizers_marks(self, connected, conn):
        conn.fetchval.side_effect = [1, None]
        assert await connected.delete_resource(1) is False

    async def test_delete_missing(self, connected, conn):
        conn.fetchval.return_value = None
        with pytest.raises(ConflictError):
            await connected.delete_resource(1)


@pytest.mark.asyncio
class TestReads:
    """Tests for get/list."""

    async def test_get_resource(self, connected, conn):
        conn.fetchrow.return_value = make_row()
        record = await connected.get_resource(1)
        assert record.key == "Website/default/site"

    async def test_get_resource_missing(self, connected, conn):
        conn.fetchrow.return_value = None
        assert await connected.get_resource(1) is None

    async def test_get_resource_by_name(self, connected, conn):
        conn.fetchrow.return_value = make_row()
        await connected.get_resource_by_name("default", "Website", "site")
        assert conn.fetchrow.call_args[0][1:] == ("default", "Website", "site")

    async def test_list_resources_filters(self, connected, conn):
        conn.fetch.return_value = [make_row(), make_row(id=2, name="other")]

        records = await connected.list_resources(
            kind="Website", namespace="default", include_deleting=False, limit=10
        )

        assert [r.id for r in records] == [1, 2]
        query, *params = conn.fetch.call_args[0]
        assert "kind = $1" in query
        assert "namespace = $2" in query
        assert "deleted_at IS NULL" in query
        assert "LIMIT $3" in query
        assert params == ["Website", "default", 10]

    async def test_list_resources_unfiltered(self, connected, conn):
        conn.fetch.return_value = []
        assert await connected.list_resources() == []
        query = conn.fetch.call_args[0][0]
        assert "deleted_at IS NULL" not in query


@pytest.mark.asyncio
class TestControllerWrites:
    """Tests for version-checked finalizer and status writes."""

    async def test_add_finalizer(self, connected, conn):
        conn.fetchval.return_value = 6
        assert await connected.add_finalizer(1, "x/y", expected_version=5) == 6
        assert conn.fetchval.call_args[0][1:] == (1, "x/y", 5)

    async def test_add_finalizer_conflict(self, connected, conn):
        conn.fetchval.return_value = None
        with pytest.raises(ConflictError) as exc:
            await connected.add_finalizer(1, "x/y", expected_version=5)
        assert exc.value.resource_id == 1
        assert "version 5" in exc.value.message

    async def test_remove_finalizer_purges_in_transaction(self, connected, conn):
        conn.fetchval.side_effect = [7, 1]

        assert await connected.remove_finalizer(1, "x/y", expected_version=6) == 7

        conn.transaction.assert_called_once()
        purge_sql = conn.fetchval.call_args_list[1][0][0]
        assert "DELETE FROM resources" in purge_sql

    async def test_remove_finalizer_conflict(self, connected, conn):
        conn.fetchval.return_value = None
        with pytest.raises(ConflictError):
            await connected.remove_finalizer(1, "x/y", expected_version=6)

    async def test_update_status(self, connected, conn):
        conn.fetchval.return_value = 8
        status = StatusBlock(observed_generation=3)

        assert await connected.update_status(1, status, expected_version=7) == 8

        args = conn.fetchval.call_args[0]
        assert json.loads(args[2])["observed_generation"] == 3
        assert args[3] == 7

    async def test_update_status_conflict(self, connected, conn):
        conn.fetchval.return_value = None
        with pytest.raises(ConflictError):
            await connected.update_status(1, StatusBlock(), expected_version=7)

    async def test_purge_finalized_resources(self, connected, conn):
        conn.fetch.return_value = [{"id": 1}, {"id": 2}]
        assert await connected.purge_finalized_resources() == 2


@pytest.mark.asyncio
class TestHistory:
    """Tests for reconciliation history."""

    async def test_record_reconciliation(self, connected, conn):
        await connected.record_reconciliation(
            resource_id=1,
            generation=2,
            success=False,
            action="requeue_after",
            reason="ReconcileFailed",
            error_message="boom",
            requeue_after=4.0,
            duration_seconds=0.5,
        )

        args = conn.execute.call_args[0]
        assert "INSERT INTO reconciliation_history" in args[0]
        assert args[1:] == (
            1,
            2,
            False,
            "requeue_after",
            "ReconcileFailed",
            "boom",
            4.0,
            0.5,
        )

    async def test_get_history(self, connected, conn):
        conn.fetch.return_value = [{"id": 3, "success": True}]
        history = await connected.get_reconciliation_history(1, limit=5)
        assert history == [{"id": 3, "success": True}]
        assert conn.fetch.call_args[0][1:] == (1, 5)
