"""Typed errors raised by the customer history module."""


class HistoryError(Exception):
    """Base class for history errors."""


class NotFoundError(HistoryError):
    """The subject has no entries, or the requested version was purged."""


class InvalidVersionError(HistoryError):
    """Requested version number is not positive or exceeds the current maximum."""


class InvalidMutationError(HistoryError):
    """Operation kind does not agree with the supplied snapshots."""


class StoreUnavailableError(HistoryError):
    """The backing store could not be reached."""


class OperationFailedError(HistoryError):
    """Generic failure surfaced to callers; the underlying kind is only logged."""

    def __init__(self, message: str = "operation failed") -> None:
        super().__init__(message)


class HistoryExportError(OperationFailedError):
    """Export of a subject's history failed."""
