"""
Integration Tests for Store
===========================

Purpose
-------
Exercise the key-addressed record store against a real SQLite database file
through the aiosqlite driver.

Test Coverage
-------------
- get / put / delete / scan
- Transaction atomicity and rollback
- Independent concurrent writes
- Error mapping (StoreError, StoreUnavailableError)
- BlockingStore from worker threads

Testing Strategy
----------------
- Each test gets a fresh database file (function-scoped `store` fixture)
- The same behaviour is checked against MySQL in test_mysql_store.py
"""

import asyncio
from pathlib import Path

import pytest

from foobot.core.database.store import BlockingStore, Store
from foobot.core.exceptions import StoreError, StoreUnavailableError


class Boom(Exception):
    pass


# ============================================================================
# RECORD OPERATIONS
# ============================================================================


@pytest.mark.asyncio
class TestRecords:
    """Basic record operations."""

    async def test_get_missing_returns_none(self, store):
        assert await store.get("command:forsen:nope") is None

    async def test_put_then_get(self, store):
        await store.put("command:forsen:hello", {"response": "hi", "uses": 1})

        assert await store.get("command:forsen:hello") == {"response": "hi", "uses": 1}

    async def test_put_overwrites(self, store):
        await store.put("k", {"v": 1})
        await store.put("k", {"v": 2})

        assert await store.get("k") == {"v": 2}

    async def test_returned_records_are_copies(self, store):
        await store.put("k", {"items": [1]})
        record = await store.get("k")
        record["items"].append(2)

        assert await store.get("k") == {"items": [1]}

    async def test_delete(self, store):
        await store.put("k", {"v": 1})

        assert await store.delete("k") is True
        assert await store.delete("k") is False
        assert await store.get("k") is None

    async def test_scan_is_prefix_scoped_and_sorted(self, store):
        await store.put("command:forsen:b", {"v": "b"})
        await store.put("command:forsen:a", {"v": "a"})
        await store.put("command:pajlada:c", {"v": "c"})

        keys = [key for key, _ in await store.scan("command:forsen:")]

        assert keys == ["command:forsen:a", "command:forsen:b"]

    async def test_scan_treats_wildcards_literally(self, store):
        await store.put("a_b:1", {})
        await store.put("axb:1", {})
        await store.put("a%b:1", {})

        assert [key for key, _ in await store.scan("a_b")] == ["a_b:1"]
        assert [key for key, _ in await store.scan("a%")] == ["a%b:1"]

    @pytest.mark.parametrize("key", ["", "x" * 256])
    async def test_invalid_keys(self, store, key):
        with pytest.raises(StoreError):
            await store.get(key)

    async def test_unserializable_record(self, store):
        with pytest.raises(StoreError):
            await store.put("k", {"when": object()})

    async def test_health_check(self, store):
        assert await store.health_check() is True


# ============================================================================
# TRANSACTIONS
# ============================================================================


@pytest.mark.asyncio
class TestTransactions:
    """Atomicity and isolation."""

    async def test_commit_applies_all_writes(self, store):
        async with store.transaction() as tx:
            await tx.put("a", {"v": 1})
            await tx.put("b", {"v": 2})

        assert await store.get("a") == {"v": 1}
        assert await store.get("b") == {"v": 2}

    async def test_exception_rolls_back_every_write(self, store):
        await store.put("existing", {"v": 0})

        with pytest.raises(Boom):
            async with store.transaction() as tx:
                await tx.put("a", {"v": 1})
                await tx.put("existing", {"v": 99})
                await tx.delete("existing")
                raise Boom()

        assert await store.get("a") is None
        assert await store.get("existing") == {"v": 0}

    async def test_reads_see_own_writes(self, store):
        async with store.transaction() as tx:
            await tx.put("a", {"v": 1})
            assert await tx.get("a") == {"v": 1}

    async def test_run_in_transaction_returns_result(self, store):
        async def move(tx):
            record = await tx.get("src")
            await tx.put("dst", record)
            await tx.delete("src")
            return record

        await store.put("src", {"v": "x"})

        assert await store.run_in_transaction(move, retry=True) == {"v": "x"}
        assert await store.get("src") is None
        assert await store.get("dst") == {"v": "x"}

    async def test_run_in_transaction_failure_rolls_back(self, store):
        async def half(tx):
            await tx.put("a", {"v": 1})
            raise Boom()

        with pytest.raises(Boom):
            await store.run_in_transaction(half)

        assert await store.get("a") is None

    async def test_concurrent_independent_puts(self, store):
        await asyncio.gather(*(store.put(f"k:{i}", {"i": i}) for i in range(10)))

        records = await store.scan("k:")

        assert len(records) == 10
        assert {record["i"] for _, record in records} == set(range(10))


# ============================================================================
# LIFECYCLE & ERRORS
# ============================================================================


@pytest.mark.asyncio
class TestLifecycle:
    async def test_uninitialized_store_raises(self, store_dsn):
        store = Store(store_dsn)

        with pytest.raises(StoreError):
            await store.get("k")
        assert await store.health_check() is False

    async def test_initialize_is_idempotent(self, store):
        await store.initialize()

        assert store.is_initialized

    async def test_unreachable_store_is_unavailable(self, tmp_path: Path):
        store = Store(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")

        with pytest.raises(StoreUnavailableError):
            await store.initialize()

        assert not store.is_initialized

    async def test_data_survives_restart(self, store_dsn):
        first = Store(store_dsn)
        await first.initialize()
        await first.put("k", {"v": 1})
        await first.shutdown()

        second = Store(store_dsn)
        await second.initialize()
        try:
            assert await second.get("k") == {"v": 1}
        finally:
            await second.shutdown()


# ============================================================================
# BLOCKING FACADE
# ============================================================================


@pytest.mark.asyncio
class TestBlockingStore:
    async def test_worker_thread_round_trip(self, store):
        blocking = BlockingStore(store, asyncio.get_running_loop(), timeout=5.0)

        def work():
            blocking.put("k", {"v": 1})
            keys = [key for key, _ in blocking.scan("k")]
            return blocking.get("k"), keys, blocking.delete("k")

        record, keys, deleted = await asyncio.to_thread(work)

        assert record == {"v": 1}
        assert keys == ["k"]
        assert deleted is True

    async def test_worker_thread_transaction(self, store):
        blocking = BlockingStore(store, asyncio.get_running_loop(), timeout=5.0)

        async def create(tx):
            await tx.put("a", {"v": 1})
            return "done"

        result = await asyncio.to_thread(blocking.run_in_transaction, create)

        assert result == "done"
        assert await store.get("a") == {"v": 1}

    async def test_use_from_loop_thread_is_rejected(self, store):
        blocking = BlockingStore(store, asyncio.get_running_loop())

        with pytest.raises(RuntimeError):
            blocking.get("k")
