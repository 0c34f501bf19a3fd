"""
Store Retry Policy

Purpose
-------
Retry policy for transient store failures (dropped connections, deadlocks,
lock-wait timeouts) with exponential backoff and jitter.

Architecture Notes
------------------
**Retry Classification**:
- Retriable: OperationalError, either raised directly or as the cause of a
  `StoreError`
- Non-retriable: everything else (constraint violations, handler errors)

**Backoff Strategy**:
- Formula: min(initial * 2^(attempt-1), max) + random(0, jitter)

**Transaction Ownership**:
- The retried operation opens its own transaction. Never retry inside an
  open transaction; retry the operation that creates it:

>>> async def operation():
...     async with store.transaction() as tx:
...         await tx.put("counter:forsen", {"value": 1})
>>> await retry_policy.execute(operation, operation_name="counter.increment")
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError

from foobot.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StoreRetryConfig:
    """
    Configuration for store retry behavior.

    Attributes
    ----------
    max_attempts : int
        Maximum number of attempts (including initial attempt).
    initial_backoff_ms : int
        Initial backoff duration in milliseconds.
    max_backoff_ms : int
        Maximum backoff duration in milliseconds.
    jitter_ms : int
        Maximum random jitter to add to backoff in milliseconds.
    retriable_exceptions : Tuple[Type[BaseException], ...]
        Exception types considered retriable.
    """

    max_attempts: int = 3
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 1000
    jitter_ms: int = 50
    retriable_exceptions: Tuple[Type[BaseException], ...] = (OperationalError,)


class StoreRetryPolicy:
    """Execute async store operations with retry semantics."""

    def __init__(
        self,
        config: Optional[StoreRetryConfig] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config or StoreRetryConfig()
        self._rng = rng or random.Random()

    @property
    def config(self) -> StoreRetryConfig:
        return self._config

    def is_retriable(self, exc: BaseException) -> bool:
        retriable = self._config.retriable_exceptions
        return isinstance(exc, retriable) or isinstance(exc.__cause__, retriable)

    def compute_backoff_ms(self, attempt: int) -> int:
        """
        Compute backoff duration for given attempt with jitter.

        Parameters
        ----------
        attempt : int
            Current attempt number (1-indexed).
        """
        exponent = max(attempt - 1, 0)
        capped = min(self._config.initial_backoff_ms * (2**exponent), self._config.max_backoff_ms)
        jitter = self._rng.randint(0, self._config.jitter_ms) if self._config.jitter_ms > 0 else 0
        return capped + jitter

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str,
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """
        Execute async operation with retry logic for transient failures.

        Parameters
        ----------
        operation : Callable[[], Awaitable[T]]
            Zero-argument async callable performing store work.
        operation_name : str
            Stable identifier for logging (e.g., "command.add").
        context : Optional[dict[str, Any]]
            Additional structured context for logs.

        Raises
        ------
        BaseException
            The last exception once retries are exhausted, or the first
            non-retriable exception.
        """
        ctx_extra = dict(context or {})
        ctx_extra["operation"] = operation_name

        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()

            except Exception as exc:
                retriable = self.is_retriable(exc)
                will_retry = retriable and attempt < self._config.max_attempts

                logger.warning(
                    "Store operation failed",
                    extra={
                        **ctx_extra,
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                        "retriable": retriable,
                        "will_retry": will_retry,
                    },
                )

                if not will_retry:
                    raise

                backoff_ms = self.compute_backoff_ms(attempt)
                logger.debug(
                    "Backing off before retry",
                    extra={**ctx_extra, "attempt": attempt, "backoff_ms": backoff_ms},
                )
                await asyncio.sleep(backoff_ms / 1000.0)
