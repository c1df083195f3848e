"""
Key-value stores with TTL and atomic consume.

Every stateful component (pending login requests, sessions, one-time codes)
persists through the TTLStore interface so the in-memory backend used by a
single gateway instance and the Redis backend used by a fleet are
interchangeable without touching protocol logic.
"""

from .base import TTLStore
from .memory import InMemoryTTLStore

__all__ = [
    "TTLStore",
    "InMemoryTTLStore",
]
