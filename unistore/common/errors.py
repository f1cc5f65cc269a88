"""Error taxonomy shared by every storage operation.

Callers always receive one of the concrete classes below. The ``category``
tells configuration mistakes (``address``/``credential``) apart from service
problems (``operation``); ``retryable`` marks transient service conditions.
"""

from __future__ import annotations


class StorageError(RuntimeError):
    """Base class for all storage failures."""

    category = "operation"
    code = "storage_error"
    retryable = False

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, str | None]:
        return {
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class AddressError(StorageError):
    category = "address"
    code = "address_error"


class UnsupportedSchemeError(AddressError):
    code = "unsupported_scheme"


class InvalidPathError(AddressError):
    code = "invalid_path"


class CredentialError(StorageError):
    category = "credential"
    code = "credential_error"


class MissingCredentialError(CredentialError):
    code = "credential_missing"


class UnreadableCredentialError(CredentialError):
    code = "credential_unreadable"


class ExpiredCredentialError(CredentialError):
    code = "credential_expired"


class OperationError(StorageError):
    code = "operation_error"


class UnsupportedOperationError(OperationError):
    code = "unsupported"


class ObjectNotFoundError(OperationError):
    code = "not_found"


class PermissionDeniedError(OperationError):
    code = "permission_denied"


class LengthRequiredError(OperationError):
    code = "length_required"


class RangeNotSatisfiableError(OperationError):
    """The requested byte range starts beyond the end of the object."""

    code = "range_not_satisfiable"


class IntegrityMismatchError(OperationError):
    """The provider checksum differs from the locally computed one.

    The object is left as the provider stored it.
    """

    code = "integrity_mismatch"

    def __init__(
        self,
        message: str,
        *,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        super().__init__(message, detail=f"expected={expected} actual={actual}")
        self.expected = expected
        self.actual = actual


class OperationCancelledError(OperationError):
    code = "cancelled"


class OperationTimeoutError(OperationError):
    code = "timeout"
    retryable = True


class RateLimitedError(OperationError):
    code = "rate_limited"
    retryable = True


class ServiceUnavailableError(OperationError):
    """Provider-side 5xx-equivalent failure."""

    code = "unavailable"
    retryable = True


class UnknownStorageError(OperationError):
    """A provider failure with no entry in the adapter's mapping table."""

    code = "unknown"


__all__ = [
    "AddressError",
    "CredentialError",
    "ExpiredCredentialError",
    "IntegrityMismatchError",
    "InvalidPathError",
    "LengthRequiredError",
    "MissingCredentialError",
    "ObjectNotFoundError",
    "OperationCancelledError",
    "OperationError",
    "OperationTimeoutError",
    "PermissionDeniedError",
    "RangeNotSatisfiableError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "StorageError",
    "UnknownStorageError",
    "UnreadableCredentialError",
    "UnsupportedOperationError",
    "UnsupportedSchemeError",
]
