"""Storage implementations.

Concrete implementations of the persistence interfaces: thread-safe
in-memory stores (tests, paper runs) and SQLAlchemy stores.
"""

from .memory_stores import MemoryCustodyStore, MemoryTriggerOrderStore
from .sql import SqlConfig, SqlStores

__all__ = ["MemoryCustodyStore", "MemoryTriggerOrderStore", "SqlConfig", "SqlStores"]
