"""Resource adapters: the engine's only window onto business entities."""

from .base import ResourceAdapter, ResourceRegistry, ServerRecord
from .sqlite import SQLiteRecordStore, SQLiteResourceAdapter, build_registry

__all__ = [
    "ResourceAdapter",
    "ResourceRegistry",
    "ServerRecord",
    "SQLiteRecordStore",
    "SQLiteResourceAdapter",
    "build_registry",
]
