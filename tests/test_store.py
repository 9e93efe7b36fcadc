"""Tests for the partitioned local store."""

import pytest

from notention.store import LocalStore, Partition


class TestLocalStoreBasics:
    """Tests for connection handling."""

    def test_connect_is_idempotent(self, store):
        """Test connecting twice keeps the same connection."""
        conn = store._conn
        store.connect()
        assert store._conn is conn

    def test_file_database_creates_parent_dir(self, tmp_path):
        """Test a file path gets its directory created."""
        db_path = tmp_path / "nested" / "notention.db"
        s = LocalStore(db_path)
        s.connect()
        try:
            assert db_path.exists()
        finally:
            s.close()

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path):
        """Test values survive closing and reopening the database."""
        db_path = tmp_path / "notention.db"
        s = LocalStore(db_path)
        await s.set(Partition.NOTES, "n1", {"title": "kept"})
        s.close()

        reopened = LocalStore(db_path)
        try:
            assert await reopened.get(Partition.NOTES, "n1") == {"title": "kept"}
        finally:
            reopened.close()


class TestLocalStoreOperations:
    """Tests for key/value operations."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        """Test reading an absent key."""
        assert await store.get(Partition.NOTES, "missing") is None

    @pytest.mark.asyncio
    async def test_set_overwrites(self, store):
        """Test a second write replaces the first."""
        await store.set(Partition.FLAGS, "ontology_needs_sync", True)
        await store.set(Partition.FLAGS, "ontology_needs_sync", False)

        assert await store.get(Partition.FLAGS, "ontology_needs_sync") is False

    @pytest.mark.asyncio
    async def test_partitions_are_isolated(self, store):
        """Test the same key in two partitions holds two values."""
        await store.set(Partition.NOTES, "x", 1)
        await store.set(Partition.TOMBSTONES, "x", 2)

        assert await store.get(Partition.NOTES, "x") == 1
        assert await store.get(Partition.TOMBSTONES, "x") == 2

    @pytest.mark.asyncio
    async def test_set_many_and_items_ordered(self, store):
        """Test a batch write and ordered listing."""
        await store.set_many(Partition.NOTES, {"b": {"n": 2}, "a": {"n": 1}})

        items = await store.items(Partition.NOTES)

        assert items == [("a", {"n": 1}), ("b", {"n": 2})]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Test deleting reports whether the key existed."""
        await store.set(Partition.NOTES, "n1", {})

        assert await store.delete(Partition.NOTES, "n1") is True
        assert await store.delete(Partition.NOTES, "n1") is False
        assert await store.get(Partition.NOTES, "n1") is None

    @pytest.mark.asyncio
    async def test_iterate(self, store):
        """Test async iteration over a partition."""
        await store.set_many(Partition.MESSAGES, {"m1": 1, "m2": 2})

        keys = [key async for key, _ in store.iterate(Partition.MESSAGES)]

        assert keys == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_clear_single_partition(self, store):
        """Test clearing one partition leaves the others."""
        await store.set(Partition.SYNC_STATE, "last_synced_at", "x")
        await store.set(Partition.NOTES, "n1", {})

        removed = await store.clear(Partition.SYNC_STATE)

        assert removed == 1
        assert await store.get(Partition.NOTES, "n1") == {}

    @pytest.mark.asyncio
    async def test_stats(self, store):
        """Test key counts per partition."""
        await store.set_many(Partition.NOTES, {"a": 1, "b": 2})

        stats = store.get_stats()

        assert stats["keys_by_partition"] == {"notes": 2}
