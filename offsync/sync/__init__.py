"""Offline change replay with conflict detection and resolution."""

from .change_store import (
    ChangeAction,
    ChangeStatus,
    ChangeStore,
    PendingChange,
    ReviewStatus,
)
from .conflicts import (
    Conflict,
    Resolution,
    ResolutionStrategy,
    detect_conflicts,
    parse_strategy,
    resolve_conflicts,
)
from .locks import UserLockRegistry
from .processor import SyncProcessor, SyncResult

__all__ = [
    "ChangeAction",
    "ChangeStatus",
    "ChangeStore",
    "PendingChange",
    "ReviewStatus",
    "Conflict",
    "Resolution",
    "ResolutionStrategy",
    "detect_conflicts",
    "parse_strategy",
    "resolve_conflicts",
    "UserLockRegistry",
    "SyncProcessor",
    "SyncResult",
]
