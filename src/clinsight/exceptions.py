"""Clinsight exception hierarchy."""


class ClinsightError(Exception):
    """Base class for all Clinsight errors."""


class ClinicalAnalyticsError(ClinsightError):
    """
    Generic wrapped failure of an analytics operation.

    Every analytics operation catches whatever went wrong, logs it and
    re-raises it as this error so callers only need to handle one type.
    """

    def __init__(self, message: str, operation: str | None = None, cause: BaseException | None = None):
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class EmbeddingDimensionError(ClinsightError, ValueError):
    """Embedding vector does not have the configured dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Embedding must have {expected} dimensions, got {actual}")
        self.expected = expected
        self.actual = actual


class FilterExpressionError(ClinsightError, ValueError):
    """Metadata filter expression could not be parsed."""

    def __init__(self, message: str, expression: str, position: int | None = None):
        detail = f"{message} at position {position}" if position is not None else message
        super().__init__(f"{detail}: {expression!r}")
        self.expression = expression
        self.position = position


class RecordNotFoundError(ClinsightError):
    """Clinical record does not exist."""

    def __init__(self, record_id):
        super().__init__(f"Clinical record not found: {record_id}")
        self.record_id = record_id


class OptimisticLockError(ClinsightError):
    """Record was modified concurrently; the caller holds a stale version."""

    def __init__(self, record_id, expected_version: int, actual_version: int):
        super().__init__(
            f"Clinical record {record_id} is at version {actual_version}, "
            f"update was based on version {expected_version}"
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class BackpressureError(ClinsightError):
    """Too many searches pending; the request was rejected instead of queued."""

    def __init__(self, pending: int, limit: int):
        super().__init__(f"Search queue full ({pending}/{limit} pending)")
        self.pending = pending
        self.limit = limit
