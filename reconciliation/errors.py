from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation services."""


class ValidationError(ReconciliationError, ValueError):
    pass


class NotFoundError(ReconciliationError, LookupError):
    pass


class DuplicateError(ReconciliationError):
    """A submission or action that was already seen.

    ``reason`` is ``duplicate_receipt`` for a receipt whose content hash is
    already stored and ``debounced`` for a repeated confirm/reject request.
    """

    def __init__(self, message: str, *, reason: str = 'duplicate_receipt', existing_id: int | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.existing_id = existing_id


class DestinationRejectedError(ValidationError):
    def __init__(self, message: str, *, extracted: dict | None = None) -> None:
        super().__init__(message)
        self.extracted = extracted or {}


class UpstreamError(ReconciliationError, RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConsistencyCheckError(ReconciliationError, RuntimeError):
    pass


class SignatureError(ReconciliationError, PermissionError):
    pass
