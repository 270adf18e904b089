"""Exceptions raised by the sync engine.

Each error carries a short ``code`` that ends up in ``SyncResult.error_code``
so callers can branch on the failure kind without parsing messages.
"""


class SyncError(Exception):
    """Base class for all sync engine errors."""

    code = "SyncError"


class UnknownResourceError(SyncError):
    """No adapter is registered for a change's resource type."""

    code = "UnknownResource"

    def __init__(self, resource_type: str):
        super().__init__(f"No adapter registered for resource '{resource_type}'")
        self.resource_type = resource_type


class RecordNotFoundError(SyncError):
    """The target server record does not exist."""

    code = "NotFound"

    def __init__(self, resource_type: str, record_id: str):
        super().__init__(f"{resource_type} record '{record_id}' not found")
        self.resource_type = resource_type
        self.record_id = record_id


class AdapterError(SyncError):
    """The storage layer failed while applying a change."""

    code = "AdapterError"


class StaleRecordError(AdapterError):
    """A write lost an optimistic sync_version check."""

    def __init__(self, record_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Record '{record_id}' is at sync_version {actual_version}, "
            f"expected {expected_version}"
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidChangeError(SyncError):
    """A queued change is malformed (bad action, missing target id)."""

    code = "InvalidChange"


class InvalidStrategyError(SyncError):
    """An unrecognized conflict resolution strategy was requested."""

    code = "InvalidStrategy"


class ChangeStoreError(SyncError):
    """The change record store itself failed.

    This is the only error that escapes a drain.
    """

    code = "StoreError"


class DrainInProgressError(SyncError):
    """Another drain already holds the user's queue."""

    code = "DrainInProgress"

    def __init__(self, user_id: str):
        super().__init__(f"A drain is already running for user '{user_id}'")
        self.user_id = user_id
