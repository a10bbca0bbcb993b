# exceptions.py
from typing import Any, Dict, List, Optional


class StorageError(Exception):
    """Base class for every failure raised by the storage core."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.cause = cause


class PermanentError(StorageError):
    """An error that will not be fixed by a retry (e.g., a missing file)."""
    pass


class AuthError(PermanentError):
    """Credentials are bad, expired or missing."""

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or reason, **kwargs)
        self.reason = reason


class UnconfiguredProviderError(PermanentError):
    """The deployment has no credentials for the requested provider kind."""

    def __init__(self, kind: str, **kwargs):
        super().__init__(
            f"Storage provider '{kind}' is not configured in this deployment.",
            provider=kind,
            **kwargs,
        )
        self.kind = kind


class NotFoundError(PermanentError):
    pass


class ConflictError(PermanentError):
    """Name collision where overwriting was not allowed."""
    pass


class QuotaExceededError(PermanentError):
    pass


class UnsupportedOperationError(PermanentError):
    """The backend has no equivalent for the requested operation."""
    pass


class TransientError(StorageError):
    """A temporary error (e.g., a network failure) that might resolve on a retry."""
    pass


class StorageTimeoutError(StorageError, TimeoutError):
    """A backend call did not complete within the configured deadline."""
    pass


class PartialBatchFailure(StorageError):
    """
    Some items of a batch operation failed. Successful items are not rolled back.

    :param succeeded: ids processed successfully, in input order.
    :param failures: id -> exception for every failed id.
    :param results: per-item results of the successful ids (e.g. copied items).
    """

    def __init__(
        self,
        operation: str,
        succeeded: List[str],
        failures: Dict[str, BaseException],
        results: Optional[List[Any]] = None,
        **kwargs,
    ):
        total = len(succeeded) + len(failures)
        super().__init__(
            f"Batch {operation} failed for {len(failures)} of {total} items.",
            **kwargs,
        )
        self.operation = operation
        self.succeeded = succeeded
        self.failures = failures
        self.results = results or []

    @property
    def failed_ids(self) -> List[str]:
        return list(self.failures)

    def reasons(self) -> Dict[str, str]:
        return {item_id: str(error) for item_id, error in self.failures.items()}
