"""
Error taxonomy for the shift plan core.
None of these are fatal: callers recover to a read-only or unsynced-but-consistent state.
"""
from typing import Optional


class ShiftPlanError(Exception):
    """Base class for every recoverable shift plan error."""


class PermissionDenied(ShiftPlanError):
    """A non-admin (or non-live) client attempted a mutating operation."""

    def __init__(self, action: str = "mutate the plan"):
        super().__init__(f"Admin permission required to {action}")
        self.action = action


class HeaderNotFound(ShiftPlanError):
    """No schedule header row was found in the scanned rows."""

    def __init__(self, scanned_rows: int):
        super().__init__(f"No schedule header found in the first {scanned_rows} rows")
        self.scanned_rows = scanned_rows


class ImportModeRequired(ShiftPlanError):
    """The plan already holds flights and the caller did not pick merge or replace."""

    def __init__(self, existing: int):
        super().__init__(f"Plan already has {existing} flights; choose merge or replace")
        self.existing = existing


class StaleWrite(ShiftPlanError):
    """The remote document is newer than local state by more than the staleness threshold."""

    def __init__(self, remote_timestamp: int, local_timestamp: int):
        super().__init__(
            f"Remote plan is {remote_timestamp - local_timestamp} ms newer than local state"
        )
        self.remote_timestamp = remote_timestamp
        self.local_timestamp = local_timestamp

    def payload(self) -> dict:
        return {
            'remoteTimestamp': self.remote_timestamp,
            'localTimestamp': self.local_timestamp
        }


class EmptyHistory(ShiftPlanError):
    """Undo was requested with no snapshot left."""

    def __init__(self):
        super().__init__("Nothing to undo")


class StoreUnavailable(ShiftPlanError):
    """The remote document store could not be reached."""

    def __init__(self, operation: str, path: str, reason: Optional[str] = None):
        message = f"Store unavailable during {operation} on {path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.operation = operation
        self.path = path


class FlightNotFound(ShiftPlanError):
    def __init__(self, flight_id: str):
        super().__init__(f"Flight not found: {flight_id}")
        self.flight_id = flight_id


class InvalidTimeLabel(ShiftPlanError, ValueError):
    def __init__(self, value):
        super().__init__(f"Invalid time format (HH:MM): {value!r}")
        self.value = value
