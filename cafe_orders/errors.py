"""Error taxonomy for the orders core.

Every error carries a short machine-readable ``code`` (``str(exc)`` returns
it, so callers can compare codes the same way they compare domain error
strings), a ``kind`` shared by the whole class of failure and a
human-readable ``detail``. The HTTP layer maps ``status_code`` straight into
the response without exposing tracebacks.
"""


class OrderError(Exception):
    """Base class for every error raised by the orders core."""

    kind = "ERROR"
    status_code = 500

    def __init__(self, code: str, detail: str | None = None):
        super().__init__(code)
        self.code = code
        self.detail = detail or code

    def to_dict(self) -> dict:
        return {"kind": self.kind, "code": self.code, "detail": self.detail}


class ValidationError(OrderError):
    """Bad input shape. Raised before any storage call, never retried."""

    kind = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransition(ValidationError):
    """A status change that the transition table does not allow."""


class NotFound(OrderError):
    kind = "NOT_FOUND"
    status_code = 404


class StorageUnavailable(OrderError):
    """Backend unreachable, timed out or failing I/O. The caller may retry."""

    kind = "STORAGE_UNAVAILABLE"
    status_code = 500


class ProcessorUnavailable(OrderError):
    """The payment processor could not be reached or answered with 5xx."""

    kind = "PROCESSOR_UNAVAILABLE"
    status_code = 503


class ReconciliationConflict(OrderError):
    """Another writer already owns the external id being inserted."""

    kind = "RECONCILIATION_CONFLICT"
    status_code = 409
