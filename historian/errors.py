"""
Exception taxonomy for the historian access layer.

Driver and transport exceptions are wrapped into these types inside
``historian.connection`` before they leave the package; callers only ever
see subclasses of HistorianError.
"""


class HistorianError(Exception):
    """Base class for all errors raised by the historian access layer."""


class DatabaseConnectionError(HistorianError):
    """The database cannot be opened or connectivity cannot be verified."""


class QueryTimeout(HistorianError):
    """A command exceeded its configured timeout.

    Attributes:
        timeout: The timeout that was exceeded, in seconds.
    """

    def __init__(self, message: str, timeout: float | None = None):
        super().__init__(message)
        self.timeout = timeout


class SchemaMismatch(HistorianError):
    """An expected table or column is absent from the database."""


class CancelledOperation(HistorianError):
    """The caller set the cancellation signal before the operation finished."""


class ValidationError(HistorianError):
    """Fetched data or metadata violates an invariant.

    Raised for non-monotonic timestamps, NaN/Infinity values, malformed tag
    metadata, and invalid time ranges.

    Attributes:
        errors: Individual validation messages (may be a single item).
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]
