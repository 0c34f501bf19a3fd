"""
Persistence subsystem for foobot.

Provides the async SQLAlchemy-backed `Store`, its transactional handle, the
retry policy for transient failures, and the ORM base classes.
"""

from foobot.core.database.base import Base, TimestampMixin, utc_now
from foobot.core.database.models import RecordRow
from foobot.core.database.retry_policy import StoreRetryConfig, StoreRetryPolicy
from foobot.core.database.store import BlockingStore, Record, Store, StoreTransaction

__all__ = [
    "Base",
    "TimestampMixin",
    "utc_now",
    "RecordRow",
    "Record",
    "Store",
    "StoreTransaction",
    "BlockingStore",
    "StoreRetryConfig",
    "StoreRetryPolicy",
]
