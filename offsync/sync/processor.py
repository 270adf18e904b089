"""Sync processor: replays a user's queued changes against server state.

One generic path handles every resource type; the adapter looked up from
the registry is the only per-resource piece.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from ..errors import (
    AdapterError,
    DrainInProgressError,
    InvalidChangeError,
    RecordNotFoundError,
    SyncError,
)
from ..resources import ResourceAdapter, ResourceRegistry
from .change_store import ChangeAction, ChangeStore, PendingChange
from .conflicts import (
    Conflict,
    ResolutionStrategy,
    change_fields,
    detect_conflicts,
    parse_strategy,
    resolve_conflicts,
)
from .locks import UserLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of applying one queued change."""

    change_id: int
    success: bool
    resource_type: str | None = None
    action: str | None = None
    record_id: str | None = None
    conflicts: list[Conflict] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    remap: dict[str, str] | None = None  # temp_id -> server id
    unresolved: bool = False  # manual strategy left conflicts for review

    @classmethod
    def failure(cls, change: PendingChange, exc: SyncError) -> "SyncResult":
        return cls(
            change_id=change.id,
            success=False,
            resource_type=change.resource_type,
            action=change.action.value,
            record_id=change.target_id,
            error=str(exc),
            error_code=exc.code,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "change_id": self.change_id,
            "success": self.success,
            "resource_type": self.resource_type,
            "action": self.action,
            "record_id": self.record_id,
        }
        if self.conflicts:
            data["conflicts"] = [c.to_dict() for c in self.conflicts]
            data["unresolved"] = self.unresolved
        if self.error:
            data["error"] = self.error
            data["error_code"] = self.error_code
        if self.remap:
            data["remap"] = self.remap
        return data


class SyncProcessor:
    """Drains per-user change queues through the resource adapters.

    At most one drain runs per user at a time, also across processes that
    share the change log; drains for different users proceed in parallel.
    """

    def __init__(
        self,
        store: ChangeStore,
        registry: ResourceRegistry,
        locks: UserLockRegistry | None = None,
        lock_timeout: float | None = None,
        drain_lock_ttl: float | None = 3600,
    ):
        """Initialize the processor.

        Args:
            store: Change log to drain.
            registry: Resource adapters keyed by resource type.
            locks: Per-user lock registry. Share one between processors
                that drain the same store.
            lock_timeout: Seconds a second drain for the same user waits.
                None waits forever, 0 rejects immediately.
            drain_lock_ttl: Seconds after which a drain claim left in the
                store by a crashed process may be taken over. None never
                takes one over.
        """
        self.store = store
        self.registry = registry
        self.locks = locks or UserLockRegistry()
        self.lock_timeout = lock_timeout
        self.drain_lock_ttl = drain_lock_ttl

    def drain(
        self,
        user_id: str,
        strategy: str | ResolutionStrategy,
        deadline: float | None = None,
    ) -> list[SyncResult]:
        """Apply every pending change for a user, oldest first.

        Args:
            user_id: Queue owner.
            strategy: Conflict resolution strategy.
            deadline: Optional seconds budget for the whole batch. Changes
                not started before it expires stay pending.

        Returns:
            One SyncResult per processed change, in processing order.

        Raises:
            InvalidStrategyError: Unknown strategy.
            DrainInProgressError: Another drain holds this user's queue.
            ChangeStoreError: The change log could not be read or written.
        """
        strategy = parse_strategy(strategy)
        with self.locks.hold(user_id, self.lock_timeout), self._claim(user_id):
            return self._drain_locked(user_id, strategy, deadline)

    def retry(
        self,
        user_id: str,
        strategy: str | ResolutionStrategy,
        deadline: float | None = None,
    ) -> list[SyncResult]:
        """Reset a user's failed changes to pending and drain again."""
        strategy = parse_strategy(strategy)
        with self.locks.hold(user_id, self.lock_timeout), self._claim(user_id):
            self.store.reset_failed_to_pending(user_id)
            return self._drain_locked(user_id, strategy, deadline)

    @contextmanager
    def _claim(self, user_id: str) -> Iterator[None]:
        """Hold the store-level drain claim for the user."""
        holder = uuid.uuid4().hex
        if not self.store.acquire_drain(user_id, holder, self.drain_lock_ttl):
            logger.warning(f"Drain for {user_id} already running in another process")
            raise DrainInProgressError(user_id)
        try:
            yield
        finally:
            self.store.release_drain(user_id, holder)

    def _drain_locked(
        self,
        user_id: str,
        strategy: ResolutionStrategy,
        deadline: float | None,
    ) -> list[SyncResult]:
        changes = self.store.list_pending(user_id)
        if not changes:
            return []

        logger.info(
            f"Draining {len(changes)} changes for {user_id} (strategy={strategy.value})"
        )

        started = time.monotonic()
        results = []
        for change in changes:
            if deadline is not None and time.monotonic() - started >= deadline:
                logger.warning(
                    f"Drain deadline of {deadline}s hit for {user_id}, "
                    f"{len(changes) - len(results)} changes left pending"
                )
                break

            result = self._process(change, strategy)

            if result.success:
                self.store.mark_completed(
                    change.id,
                    [c.to_dict() for c in result.conflicts],
                    needs_review=result.unresolved,
                )
            else:
                logger.warning(f"Change {change.id} failed: {result.error}")
                self.store.mark_failed(change.id, result.error)

            results.append(result)

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            f"Drain for {user_id}: {succeeded} completed, "
            f"{len(results) - succeeded} failed"
        )
        return results

    def _process(self, change: PendingChange, strategy: ResolutionStrategy) -> SyncResult:
        """Apply one change. Never raises: failures become failed results."""
        logger.debug(
            f"Processing change {change.id}: {change.action.value} {change.resource_type}"
        )
        try:
            adapter = self.registry.resolve(change.resource_type)

            if change.action is ChangeAction.CREATE:
                return self._apply_create(adapter, change)
            if change.action is ChangeAction.UPDATE:
                return self._apply_update(adapter, change, strategy)
            if change.action is ChangeAction.DELETE:
                return self._apply_delete(adapter, change)
            raise InvalidChangeError(f"Unknown action: {change.action}")

        except SyncError as e:
            return SyncResult.failure(change, e)
        except Exception as e:
            logger.debug(f"Adapter raised {type(e).__name__} for change {change.id}")
            return SyncResult.failure(change, AdapterError(str(e)))

    def _apply_create(self, adapter: ResourceAdapter, change: PendingChange) -> SyncResult:
        record = adapter.create(change.user_id, change_fields(change))

        remap = None
        if change.temp_id is not None:
            remap = {str(change.temp_id): record.id}

        return SyncResult(
            change_id=change.id,
            success=True,
            resource_type=change.resource_type,
            action=change.action.value,
            record_id=record.id,
            remap=remap,
        )

    def _apply_update(
        self,
        adapter: ResourceAdapter,
        change: PendingChange,
        strategy: ResolutionStrategy,
    ) -> SyncResult:
        record_id = self._require_target(change)

        current = adapter.fetch(record_id)
        if current is None:
            raise RecordNotFoundError(change.resource_type, record_id)

        conflicts = detect_conflicts(current, change)
        if conflicts:
            fields = resolve_conflicts(current, change, conflicts, strategy)
        else:
            fields = change_fields(change)

        adapter.apply_update(record_id, fields, current.sync_version + 1)

        return SyncResult(
            change_id=change.id,
            success=True,
            resource_type=change.resource_type,
            action=change.action.value,
            record_id=record_id,
            conflicts=conflicts,
            unresolved=bool(conflicts) and strategy is ResolutionStrategy.MANUAL,
        )

    def _apply_delete(self, adapter: ResourceAdapter, change: PendingChange) -> SyncResult:
        record_id = self._require_target(change)

        try:
            adapter.delete(record_id)
        except RecordNotFoundError:
            logger.debug(f"{change.resource_type} {record_id} already deleted")

        return SyncResult(
            change_id=change.id,
            success=True,
            resource_type=change.resource_type,
            action=change.action.value,
            record_id=record_id,
        )

    @staticmethod
    def _require_target(change: PendingChange) -> str:
        if change.target_id is None:
            raise InvalidChangeError(
                f"{change.action.value} change {change.id} has no target id"
            )
        return change.target_id
