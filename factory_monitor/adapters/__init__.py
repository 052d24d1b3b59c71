"""
Event store backends.

- InMemoryEventStore: process-local store, the default
- RedisEventStore: shared store backed by Redis keys and sorted sets
"""

from .base import (
    EventStore,
    StoreError,
    StoreUnavailableError,
    WriteConflictError,
    DuplicateEventError,
    ConcurrentUpdateError,
)
from .memory import InMemoryEventStore
from .redis_store import RedisEventStore

__all__ = [
    "EventStore",
    "StoreError",
    "StoreUnavailableError",
    "WriteConflictError",
    "DuplicateEventError",
    "ConcurrentUpdateError",
    "InMemoryEventStore",
    "RedisEventStore",
]
