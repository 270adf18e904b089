"""Resource adapter contract and the registry that maps type names to adapters."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..errors import UnknownResourceError

logger = logging.getLogger(__name__)


@dataclass
class ServerRecord:
    """Canonical stored entity as seen by the sync engine.

    Only ``id``, ``updated_at`` and ``sync_version`` carry meaning here;
    everything in ``fields`` is resource-specific.
    """

    id: str
    user_id: str
    updated_at: datetime
    sync_version: int = 1
    created_at: datetime | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        """Flatten to a single dictionary for serialization."""
        return {
            **self.fields,
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat(),
            "sync_version": self.sync_version,
        }


class ResourceAdapter(ABC):
    """Abstract base for per-resource storage operations."""

    @property
    @abstractmethod
    def resource_type(self) -> str:
        """Registry key, e.g. "earnings"."""
        pass

    @abstractmethod
    def create(self, user_id: str, payload: dict[str, Any]) -> ServerRecord:
        """Persist a new record with sync_version 1."""
        pass

    @abstractmethod
    def fetch(self, record_id: str) -> ServerRecord | None:
        """Get the current record, or None if it does not exist."""
        pass

    @abstractmethod
    def apply_update(
        self, record_id: str, fields: dict[str, Any], new_sync_version: int
    ) -> ServerRecord:
        """Write fields and bump the record to ``new_sync_version``.

        Raises:
            RecordNotFoundError: The record does not exist.
            StaleRecordError: The stored version is not ``new_sync_version - 1``.
        """
        pass

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Remove the record.

        Raises:
            RecordNotFoundError: The record does not exist.
        """
        pass


class ResourceRegistry:
    """Maps resource type names to their adapters."""

    def __init__(self):
        self._adapters: dict[str, ResourceAdapter] = {}

    def register(self, adapter: ResourceAdapter, resource_type: str | None = None) -> None:
        """Register an adapter.

        Args:
            adapter: The ResourceAdapter to register.
            resource_type: Key to register under. Defaults to the adapter's own.
        """
        key = resource_type or adapter.resource_type
        if key in self._adapters:
            logger.warning(f"Replacing adapter for resource '{key}'")
        self._adapters[key] = adapter

    def unregister(self, resource_type: str) -> None:
        self._adapters.pop(resource_type, None)

    def resolve(self, resource_type: str) -> ResourceAdapter:
        """Look up the adapter for a resource type.

        Raises:
            UnknownResourceError: Nothing is registered under that name.
        """
        if adapter := self._adapters.get(resource_type):
            return adapter
        raise UnknownResourceError(resource_type)

    def __contains__(self, resource_type: str) -> bool:
        return resource_type in self._adapters

    @property
    def resource_types(self) -> list[str]:
        """Get list of registered resource types."""
        return list(self._adapters.keys())
