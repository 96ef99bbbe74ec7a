"""
Caching infrastructure: binary stores, request coalescing, and ephemeral handles.
"""
from .core import CacheEntry, FreshnessTier
from .coalescer import RequestCoalescer
from .handles import HandleRegistry, HandleRecord
from .stores import (
    BinaryStore,
    MarkerStore,
    MemoryBinaryStore,
    MemoryMarkerStore,
    SQLBinaryStore,
    SQLMarkerStore,
    StorageError,
)

__all__ = [
    # Core types
    "CacheEntry",
    "FreshnessTier",
    # Coalescing
    "RequestCoalescer",
    # Handles
    "HandleRegistry",
    "HandleRecord",
    # Stores
    "BinaryStore",
    "MarkerStore",
    "MemoryBinaryStore",
    "MemoryMarkerStore",
    "SQLBinaryStore",
    "SQLMarkerStore",
    "StorageError",
]
