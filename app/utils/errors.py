"""Exception taxonomy for the swap matching engine."""

from __future__ import annotations

from typing import Any


class SwapEngineError(Exception):
    """Base exception for all engine errors.

    Carries an HTTP status code and a machine-readable ``code`` so the API
    layer can render every subclass the same way.
    """

    code: str = "engine_error"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(SwapEngineError):
    """Raised when a request is rejected before any state change.

    ``reason`` is one of ``self_swipe``, ``duplicate_swipe``,
    ``invalid_target``, ``invalid_source``, ``not_owner`` or ``malformed``.
    """

    code = "validation_error"

    def __init__(
        self,
        reason: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(message or reason.replace("_", " "), 422, details)


class ConflictError(SwapEngineError):
    """A duplicate insert lost a race with another writer.

    Callers treat this as a successful no-op.
    """

    code = "conflict"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, 409, details)


class TransientStoreError(SwapEngineError):
    """The preference graph store could not complete a read or write."""

    code = "store_unavailable"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, 503, details)


class DegenerateCandidateError(SwapEngineError):
    """A candidate's participants became invalid before it was committed."""

    code = "degenerate_candidate"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, 409, details)


class SnapshotUnavailableError(SwapEngineError):
    """A discovery run could not acquire the graph snapshot at all."""

    code = "snapshot_unavailable"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, 503, details)


class NotFoundError(SwapEngineError):
    """Raised when a requested resource does not exist."""

    code = "not_found"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, 404, details)
