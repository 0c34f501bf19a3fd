"""
Integration Tests for Store on MySQL
====================================

Purpose
-------
Run the Store contract against a real MySQL server (testcontainers) through
the aiomysql driver, including pooled concurrent transactions.

Requires Docker; select with ``pytest -m integration``.
"""

import asyncio

import pytest
import pytest_asyncio

from foobot.core.database.store import Store


@pytest_asyncio.fixture
async def mysql_store(mysql_dsn):
    store = Store(mysql_dsn, pool_size=5, max_overflow=5)
    await store.initialize()
    async with store.transaction() as tx:
        for key, _ in await tx.scan(""):
            await tx.delete(key)
    yield store
    await store.shutdown()


class Boom(Exception):
    pass


@pytest.mark.integration
@pytest.mark.asyncio
class TestMySqlStore:
    async def test_put_get_delete(self, mysql_store):
        await mysql_store.put("command:forsen:hello", {"response": "hi"})

        assert await mysql_store.get("command:forsen:hello") == {"response": "hi"}
        assert await mysql_store.delete("command:forsen:hello") is True
        assert await mysql_store.get("command:forsen:hello") is None

    async def test_rollback(self, mysql_store):
        with pytest.raises(Boom):
            async with mysql_store.transaction() as tx:
                await tx.put("a", {"v": 1})
                raise Boom()

        assert await mysql_store.get("a") is None

    async def test_scan_prefix(self, mysql_store):
        await mysql_store.put("command:forsen:b", {})
        await mysql_store.put("command:forsen:a", {})
        await mysql_store.put("command:other:c", {})

        keys = [key for key, _ in await mysql_store.scan("command:forsen:")]

        assert keys == ["command:forsen:a", "command:forsen:b"]

    async def test_concurrent_transactions_use_the_pool(self, mysql_store):
        async def write(i: int) -> None:
            async with mysql_store.transaction() as tx:
                await tx.put(f"k:{i}", {"i": i})
                await asyncio.sleep(0.01)

        await asyncio.gather(*(write(i) for i in range(20)))

        assert len(await mysql_store.scan("k:")) == 20

    async def test_health_check(self, mysql_store):
        assert await mysql_store.health_check() is True
