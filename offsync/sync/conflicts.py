"""Conflict detection and strategy-based resolution.

A conflict is judged against the client's base state: the time the client
captured its change (``enqueued_at``). If the server record was written
after that moment, every payload field whose value disagrees with the
server is a conflict. Resolution happens field by field.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import InvalidStrategyError
from ..resources import ServerRecord
from .change_store import PendingChange

logger = logging.getLogger(__name__)

# Identity and bookkeeping fields are never compared
IGNORED_FIELDS = frozenset({"id", "user_id", "created_at", "updated_at", "sync_version"})

# Client-side correlation id, never persisted
TEMP_ID_FIELD = "temp_id"


class Resolution(Enum):
    """Which side a conflicting field was resolved to."""

    CLIENT = "client"
    SERVER = "server"


class ResolutionStrategy(Enum):
    """Policy applied to every conflicting field of a change."""

    CLIENT_WINS = "client-wins"
    SERVER_WINS = "server-wins"
    # Takes the client value even though the server is the newer write;
    # the name suggests otherwise and is pending product confirmation.
    LAST_WRITE_WINS = "last-write-wins"
    MANUAL = "manual"


def parse_strategy(value: str | ResolutionStrategy) -> ResolutionStrategy:
    if isinstance(value, ResolutionStrategy):
        return value
    try:
        return ResolutionStrategy(value)
    except ValueError:
        valid = ", ".join(s.value for s in ResolutionStrategy)
        raise InvalidStrategyError(
            f"Unknown strategy '{value}' (expected one of: {valid})"
        ) from None


@dataclass
class Conflict:
    """A single field on which client and server disagree."""

    field: str
    client_value: Any
    server_value: Any
    resolution: Resolution | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "client_value": self.client_value,
            "server_value": self.server_value,
            "resolution": self.resolution.value if self.resolution else None,
        }


def change_fields(change: PendingChange) -> dict[str, Any]:
    """Payload fields a change writes, minus identity and bookkeeping."""
    return {
        k: v
        for k, v in change.payload.items()
        if k not in IGNORED_FIELDS and k != TEMP_ID_FIELD
    }


def detect_conflicts(server_record: ServerRecord, change: PendingChange) -> list[Conflict]:
    """Compare a queued change against the current server record.

    Args:
        server_record: Current state of the target record.
        change: The queued update.

    Returns:
        One unresolved Conflict per differing field, or an empty list if
        the server has not been written since the client's base time.
    """
    if server_record.updated_at <= change.enqueued_at:
        return []

    conflicts = []
    for name, client_value in change_fields(change).items():
        server_value = server_record.get(name)
        if server_value != client_value:
            conflicts.append(
                Conflict(field=name, client_value=client_value, server_value=server_value)
            )

    if conflicts:
        logger.debug(
            f"Change {change.id} conflicts on {[c.field for c in conflicts]} "
            f"(server updated {server_record.updated_at.isoformat()}, "
            f"client base {change.enqueued_at.isoformat()})"
        )
    return conflicts


def resolve_conflicts(
    server_record: ServerRecord,
    change: PendingChange,
    conflicts: list[Conflict],
    strategy: ResolutionStrategy,
) -> dict[str, Any]:
    """Build the field map to persist for a conflicting change.

    Non-conflicting fields come from the change as-is. Each conflict gets
    its ``resolution`` set in place.

    Returns:
        A value for every field the change touched.
    """
    merged = change_fields(change)

    for conflict in conflicts:
        if strategy in (ResolutionStrategy.CLIENT_WINS, ResolutionStrategy.LAST_WRITE_WINS):
            merged[conflict.field] = conflict.client_value
            conflict.resolution = Resolution.CLIENT
        elif strategy in (ResolutionStrategy.SERVER_WINS, ResolutionStrategy.MANUAL):
            merged[conflict.field] = conflict.server_value
            conflict.resolution = Resolution.SERVER
        else:
            raise InvalidStrategyError(f"Unhandled strategy: {strategy}")

    return merged
