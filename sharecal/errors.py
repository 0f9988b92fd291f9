"""
Exception classes raised by the calendar engine.

Store implementations translate transport failures into these at the
boundary, so callers only ever see this hierarchy.
"""


class CalendarError(Exception):
    """Base class for all engine errors."""


class StoreError(CalendarError):
    """A read or write against the event store failed."""


class StoreUnavailable(StoreError):
    """The store could not be reached (network error or timeout)."""


class StoreAuthError(StoreError):
    """The store rejected our credentials (expired or missing key)."""


class NotFound(StoreError):
    """The row addressed by a write no longer exists."""

    def __init__(self, table: str, row_id: str):
        super().__init__(f"{table} row not found: {row_id}")
        self.table = table
        self.row_id = row_id


class PermissionDenied(CalendarError):
    """The current user may not perform this action on this record."""


class InvalidTransition(CalendarError):
    """A shared event was asked to move to a state it cannot reach."""

    def __init__(self, shared_id: str, current: str, requested: str):
        super().__init__(
            f"Shared event {shared_id}: cannot go from '{current}' to '{requested}'"
        )
        self.shared_id = shared_id
        self.current = current
        self.requested = requested
