"""Sync service: the engine's inbound surface.

Wires the change store, resource registry and processor together, and
fans drains for many users out over a thread pool.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any

from .clock import utcnow
from .config import Config
from .errors import InvalidChangeError, RecordNotFoundError, SyncError
from .resources import ResourceRegistry, SQLiteRecordStore, build_registry
from .sync import (
    ChangeStatus,
    ChangeStore,
    PendingChange,
    ResolutionStrategy,
    ReviewStatus,
    SyncProcessor,
    SyncResult,
    parse_strategy,
)

logger = logging.getLogger(__name__)


class SyncService:
    """Enqueue, drain, retry and housekeeping operations for all users."""

    def __init__(
        self,
        store: ChangeStore,
        registry: ResourceRegistry,
        max_workers: int = 4,
        drain_deadline: float | None = None,
        lock_timeout: float | None = None,
        retention_days: int = 30,
        drain_lock_ttl: float | None = 3600,
    ):
        """Initialize the sync service.

        Args:
            store: Connected change store.
            registry: Populated resource registry.
            max_workers: Thread pool size for multi-user drains.
            drain_deadline: Default per-drain batch deadline in seconds.
            lock_timeout: How long a same-user drain waits for the lock.
            retention_days: Default age for purging completed changes.
            drain_lock_ttl: Age in seconds at which another process's drain
                claim counts as abandoned.
        """
        self.store = store
        self.registry = registry
        self.processor = SyncProcessor(
            store, registry, lock_timeout=lock_timeout, drain_lock_ttl=drain_lock_ttl
        )
        self.max_workers = max_workers
        self.drain_deadline = drain_deadline
        self.retention_days = retention_days
        self._owned: list[Any] = []

    @classmethod
    def from_config(cls, config: Config) -> "SyncService":
        """Build a service with SQLite-backed change log and records."""
        store = ChangeStore(config.store.db_path)
        store.connect()

        records = SQLiteRecordStore(config.records.db_path)
        records.connect()

        service = cls(
            store,
            build_registry(records, config.records.resource_types),
            max_workers=config.sync.max_workers,
            drain_deadline=config.sync.drain_deadline_seconds,
            lock_timeout=config.sync.lock_timeout_seconds,
            retention_days=config.store.completed_retention_days,
            drain_lock_ttl=config.sync.drain_lock_ttl_seconds,
        )
        service._owned = [store, records]
        return service

    def close(self) -> None:
        """Close any stores this service opened itself."""
        for resource in self._owned:
            resource.close()
        self._owned = []

    def enqueue(
        self,
        user_id: str,
        resource_type: str,
        action: str,
        payload: dict[str, Any],
        client_id: str,
        enqueued_at: datetime | None = None,
    ) -> int:
        return self.store.enqueue(
            user_id, resource_type, action, payload, client_id, enqueued_at
        )

    def drain(
        self,
        user_id: str,
        strategy: str | ResolutionStrategy,
        deadline: float | None = None,
    ) -> list[SyncResult]:
        return self.processor.drain(
            user_id, strategy, deadline if deadline is not None else self.drain_deadline
        )

    def retry(
        self,
        user_id: str,
        strategy: str | ResolutionStrategy,
        deadline: float | None = None,
    ) -> list[SyncResult]:
        return self.processor.retry(
            user_id, strategy, deadline if deadline is not None else self.drain_deadline
        )

    def drain_many(
        self,
        user_ids: list[str],
        strategy: str | ResolutionStrategy,
    ) -> dict[str, list[SyncResult] | SyncError]:
        """Drain several users' queues in parallel.

        Returns:
            Results per user. A user whose drain raised a SyncError maps
            to that error instead of a result list.
        """
        strategy = parse_strategy(strategy)
        outcomes: dict[str, list[SyncResult] | SyncError] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                user_id: pool.submit(self.drain, user_id, strategy)
                for user_id in dict.fromkeys(user_ids)
            }
            for user_id, future in futures.items():
                try:
                    outcomes[user_id] = future.result()
                except SyncError as e:
                    logger.error(f"Drain for {user_id} failed: {e}")
                    outcomes[user_id] = e

        return outcomes

    def status(self, user_id: str) -> dict[str, int]:
        return self.store.status(user_id)

    def count_pending(self, user_id: str) -> int:
        return self.store.count_pending(user_id)

    def list_changes(
        self,
        user_id: str,
        status: str | ChangeStatus | None = None,
        limit: int = 50,
    ) -> list[PendingChange]:
        if isinstance(status, str):
            status = ChangeStatus(status)
        return self.store.list_changes(user_id, status=status, limit=limit)

    def purge_completed(self, user_id: str, older_than: datetime | None = None) -> int:
        return self.store.purge_completed(user_id, older_than)

    def purge_expired(self, user_id: str) -> int:
        """Purge completed changes older than the configured retention."""
        cutoff = utcnow() - timedelta(days=self.retention_days)
        return self.store.purge_completed(user_id, cutoff)

    def list_unresolved(self, user_id: str) -> list[PendingChange]:
        return self.store.list_unresolved(user_id)

    def resolve_conflicts(
        self,
        user_id: str,
        change_id: int,
        values: dict[str, Any] | None = None,
        note: str | None = None,
    ) -> PendingChange:
        """Close the review of conflicts a manual-strategy drain kept.

        Args:
            user_id: Owner of the change.
            change_id: Completed change awaiting review.
            values: Final values for conflicting fields, written to the
                record. None accepts the server values already stored.
            note: Free-form reviewer note kept with the resolution.

        Returns:
            The change after review.

        Raises:
            RecordNotFoundError: No change awaiting review, or its record is gone.
            InvalidChangeError: values names a field that was not in conflict.
            AdapterError: The record could not be updated.
        """
        change = self.store.get(change_id)
        if (
            change is None
            or change.user_id != user_id
            or change.review_status is not ReviewStatus.UNRESOLVED
        ):
            raise RecordNotFoundError("change", str(change_id))

        if values:
            conflicted = {c["field"] for c in change.conflicts}
            unknown = sorted(set(values) - conflicted)
            if unknown:
                raise InvalidChangeError(
                    f"Fields not in conflict for change {change_id}: {', '.join(unknown)}"
                )

            record_id = change.target_id
            adapter = self.registry.resolve(change.resource_type)
            current = adapter.fetch(record_id)
            if current is None:
                raise RecordNotFoundError(change.resource_type, record_id)
            adapter.apply_update(record_id, values, current.sync_version + 1)

        if not self.store.mark_reviewed(
            user_id, change_id, {"values": values or {}, "note": note}
        ):
            raise RecordNotFoundError("change", str(change_id))
        return self.store.get(change_id)
