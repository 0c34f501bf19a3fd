"""
Store - Persistence Layer

Purpose
-------
Owns all persisted state. Exposes key-addressed record operations and atomic
transactions over a SQLAlchemy async engine. Handlers receive a `Store` and
never see a raw connection or session.

Responsibilities
----------------
- Own the AsyncEngine and its connection pool
- Provide `get` / `put` / `delete` / `scan` one-shot operations
- Provide `transaction()` (async context manager) and `run_in_transaction(fn)`
  with all-or-nothing semantics: commit on success, rollback on any exception
- Translate driver failures into `StoreError`
- Verify reachability at startup (`StoreUnavailableError` is fatal)

Non-Responsibilities
--------------------
- Schema migrations (only `create_all` bootstrap for the records table)
- Business semantics of keys and records

Architecture Notes
------------------
**Transaction Model**:
- Each transaction is short-lived: one command's worth of work.
- Transactions are never held across a reconnect or returned to callers.
- Records are returned as copies; mutating a returned dict has no effect
  until it is `put` back.

**Connection Pooling**:
- AsyncAdaptedQueuePool (pool_size / max_overflow / pre-ping) for server DSNs
- SQLAlchemy's SQLite defaults for ``sqlite+aiosqlite`` DSNs

Usage Example
-------------
>>> store = Store("sqlite+aiosqlite:///foobot.db")
>>> await store.initialize()
>>> async with store.transaction() as tx:
...     await tx.put("command:forsen:hello", {"response": "hi"})
...     await tx.put("command:forsen:bye", {"response": "cya"})
>>> await store.get("command:forsen:hello")
{'response': 'hi'}
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncGenerator,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from foobot.core.config.config import BotSettings
from foobot.core.database.base import Base
from foobot.core.database.models import KEY_MAX_LENGTH, RecordRow
from foobot.core.database.retry_policy import StoreRetryPolicy
from foobot.core.exceptions import StoreError, StoreUnavailableError
from foobot.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Record = Dict[str, Any]


def _validate_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise StoreError("validate_key", ValueError("key must be a non-empty string"))
    if len(key) > KEY_MAX_LENGTH:
        raise StoreError("validate_key", ValueError(f"key longer than {KEY_MAX_LENGTH}"))


def _serializable_copy(record: Mapping[str, Any]) -> Record:
    if not isinstance(record, Mapping):
        raise StoreError("put", TypeError(f"record must be a mapping, got {type(record).__name__}"))
    try:
        return json.loads(json.dumps(dict(record)))
    except (TypeError, ValueError) as exc:
        raise StoreError("put", exc) from exc


class StoreTransaction:
    """
    Transactional handle yielded by `Store.transaction()`.

    All writes made through one handle commit together or not at all.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key: str) -> Optional[Record]:
        _validate_key(key)
        row = await self._session.get(RecordRow, key)
        return json.loads(json.dumps(row.value)) if row is not None else None

    async def put(self, key: str, record: Mapping[str, Any]) -> None:
        _validate_key(key)
        value = _serializable_copy(record)
        row = await self._session.get(RecordRow, key)
        if row is None:
            self._session.add(RecordRow(key=key, value=value))
        else:
            row.value = value
        await self._session.flush()

    async def delete(self, key: str) -> bool:
        _validate_key(key)
        row = await self._session.get(RecordRow, key)
        if row is None:
            return False
        await self._session.delete(row)
        await self._session.flush()
        return True

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        """Return every ``(key, record)`` whose key starts with `prefix`, sorted by key."""
        result = await self._session.execute(
            select(RecordRow)
            .where(RecordRow.key.startswith(prefix, autoescape=True))
            .order_by(RecordRow.key)
        )
        return [(row.key, json.loads(json.dumps(row.value))) for row in result.scalars()]


class Store:
    """
    Key-addressed record store with atomic transactions.

    Public API
    ----------
    **Lifecycle**:
    - initialize() -> Create engine, schema, and verify reachability
    - shutdown() -> Dispose engine

    **Records**:
    - get(key) / put(key, record) / delete(key) / scan(prefix)

    **Transactions**:
    - transaction() -> async context manager yielding StoreTransaction
    - run_in_transaction(fn) -> run `fn(tx)` atomically, optionally retried
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 1800,
        echo: bool = False,
        retry_policy: Optional[StoreRetryPolicy] = None,
    ) -> None:
        self._dsn = dsn
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_recycle = pool_recycle
        self._echo = echo
        self._retry_policy = retry_policy or StoreRetryPolicy()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: BotSettings) -> "Store":
        return cls(
            settings.store_dsn,
            pool_size=settings.store_pool_size,
            max_overflow=settings.store_max_overflow,
            echo=settings.store_echo,
        )

    @property
    def url_scheme(self) -> str:
        return self._dsn.split(":", 1)[0] if ":" in self._dsn else "unknown"

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    # ========================================================================
    # Initialization & Shutdown
    # ========================================================================

    async def initialize(self, *, create_schema: bool = True) -> None:
        """
        Create the engine, bootstrap the schema and verify reachability.

        Idempotent. Raises `StoreUnavailableError` when the store cannot be
        reached; the supervisor treats that as fatal.
        """
        async with self._init_lock:
            if self._engine is not None:
                logger.debug("Store already initialized; skipping")
                return

            logger.info("Initializing store", extra={"url_scheme": self.url_scheme})

            engine_kwargs: dict[str, Any] = {"echo": self._echo}
            if not self._dsn.startswith("sqlite"):
                engine_kwargs.update(
                    {
                        "pool_size": self._pool_size,
                        "max_overflow": self._max_overflow,
                        "pool_recycle": self._pool_recycle,
                        "pool_pre_ping": True,
                    }
                )

            try:
                engine = create_async_engine(self._dsn, **engine_kwargs)
            except (SQLAlchemyError, ImportError, ValueError) as exc:
                raise StoreUnavailableError(f"invalid DSN: {exc}") from exc

            try:
                async with engine.begin() as conn:
                    await conn.execute(text("SELECT 1"))
                    if create_schema:
                        await conn.run_sync(Base.metadata.create_all)
            except (SQLAlchemyError, OSError) as exc:
                await engine.dispose()
                logger.error(
                    "Store unreachable at startup",
                    extra={"url_scheme": self.url_scheme, "error_type": type(exc).__name__},
                    exc_info=True,
                )
                raise StoreUnavailableError(str(exc)) from exc

            self._engine = engine
            self._session_factory = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            logger.info("Store initialized", extra={"url_scheme": self.url_scheme})

    async def shutdown(self) -> None:
        async with self._init_lock:
            if self._engine is None:
                return
            logger.info("Shutting down store")
            try:
                await self._engine.dispose()
            finally:
                self._engine = None
                self._session_factory = None

    async def health_check(self) -> bool:
        """Lightweight ``SELECT 1``; never raises."""
        if self._engine is None:
            return False
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.warning(
                "Store health check failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return False

    # ========================================================================
    # Transactions
    # ========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[StoreTransaction, None]:
        """
        Atomic unit of work.

        Commits when the block exits normally. Any exception rolls back every
        write made in the block and is re-raised; driver exceptions are
        re-raised as `StoreError`.
        """
        if self._session_factory is None:
            raise StoreError("transaction", RuntimeError("store is not initialized"))

        start = time.perf_counter()
        async with self._session_factory() as session:
            try:
                yield StoreTransaction(session)
                await session.commit()
                logger.debug(
                    "Store transaction committed",
                    extra={"duration_ms": (time.perf_counter() - start) * 1000.0},
                )

            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "Driver error in store transaction; rolled back",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                raise StoreError("transaction", exc) from exc

            except BaseException as exc:
                await session.rollback()
                logger.debug(
                    "Store transaction rolled back",
                    extra={"error_type": type(exc).__name__},
                )
                raise

    async def run_in_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
        *,
        operation_name: str = "store.transaction",
        retry: bool = False,
    ) -> T:
        """
        Run ``fn(tx)`` inside one transaction and return its result.

        With ``retry=True`` the whole transaction is re-run on transient
        driver failures; `fn` must then be safe to run more than once.
        """

        async def operation() -> T:
            async with self.transaction() as tx:
                return await fn(tx)

        if not retry:
            return await operation()
        return await self._retry_policy.execute(operation, operation_name=operation_name)

    # ========================================================================
    # One-shot operations
    # ========================================================================

    async def get(self, key: str) -> Optional[Record]:
        async with self.transaction() as tx:
            return await tx.get(key)

    async def put(self, key: str, record: Mapping[str, Any]) -> None:
        async with self.transaction() as tx:
            await tx.put(key, record)

    async def delete(self, key: str) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(key)

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        async with self.transaction() as tx:
            return await tx.scan(prefix)


class BlockingStore:
    """
    Synchronous facade over `Store` for handlers running on worker threads.

    Each call is scheduled onto the event loop that owns the engine and the
    worker thread blocks until it completes. Calling it from the loop thread
    itself would deadlock and raises `RuntimeError`.
    """

    def __init__(
        self,
        store: Store,
        loop: asyncio.AbstractEventLoop,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._loop = loop
        self._timeout = timeout

    def _call(self, factory: Callable[[], Coroutine[Any, Any, T]]) -> T:
        try:
            running: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            raise RuntimeError("BlockingStore used from the event loop thread")

        future = asyncio.run_coroutine_threadsafe(factory(), self._loop)
        return future.result(self._timeout)

    def get(self, key: str) -> Optional[Record]:
        return self._call(lambda: self._store.get(key))

    def put(self, key: str, record: Mapping[str, Any]) -> None:
        self._call(lambda: self._store.put(key, record))

    def delete(self, key: str) -> bool:
        return self._call(lambda: self._store.delete(key))

    def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        return self._call(lambda: self._store.scan(prefix))

    def run_in_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
        *,
        operation_name: str = "store.transaction",
        retry: bool = False,
    ) -> T:
        return self._call(
            lambda: self._store.run_in_transaction(fn, operation_name=operation_name, retry=retry)
        )
