"""
Storage Module

PersistentStore implementations.
"""

from .memory_store import InMemoryPersistentStore, record_id_for

__all__ = ["InMemoryPersistentStore", "record_id_for"]
