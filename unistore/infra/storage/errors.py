"""Translation of provider-native failures into the storage error taxonomy.

Each adapter publishes an :class:`ErrorMapping`: explicit tables keyed by the
provider's error code, HTTP status, ``errno`` or exception class. Messages are
never inspected. Anything without an entry surfaces as
:class:`UnknownStorageError` carrying the provider message.
"""

from __future__ import annotations

import errno
import ftplib
import logging
from dataclasses import dataclass, field
from typing import Mapping

from unistore.common.errors import (
    ExpiredCredentialError,
    ObjectNotFoundError,
    OperationTimeoutError,
    PermissionDeniedError,
    RangeNotSatisfiableError,
    RateLimitedError,
    ServiceUnavailableError,
    StorageError,
    UnknownStorageError,
)

logger = logging.getLogger("unistore.errors")

ErrorClass = type[StorageError]


@dataclass(frozen=True)
class ErrorMapping:
    name: str
    codes: Mapping[str, ErrorClass] = field(default_factory=dict)
    statuses: Mapping[int, ErrorClass] = field(default_factory=dict)
    errnos: Mapping[int, ErrorClass] = field(default_factory=dict)
    # keyed by "module.QualName" so provider SDKs need not be importable here
    types: Mapping[str, ErrorClass] = field(default_factory=dict)

    def extend(
        self,
        name: str,
        *,
        codes: Mapping[str, ErrorClass] | None = None,
        statuses: Mapping[int, ErrorClass] | None = None,
        errnos: Mapping[int, ErrorClass] | None = None,
        types: Mapping[str, ErrorClass] | None = None,
    ) -> "ErrorMapping":
        return ErrorMapping(
            name=name,
            codes={**self.codes, **(codes or {})},
            statuses={**self.statuses, **(statuses or {})},
            errnos={**self.errnos, **(errnos or {})},
            types={**self.types, **(types or {})},
        )


BASE_MAPPING = ErrorMapping(
    name="base",
    errnos={
        errno.ENOENT: ObjectNotFoundError,
        errno.ENOTDIR: ObjectNotFoundError,
        errno.EISDIR: ObjectNotFoundError,
        errno.EACCES: PermissionDeniedError,
        errno.EPERM: PermissionDeniedError,
        errno.EROFS: PermissionDeniedError,
        errno.ETIMEDOUT: OperationTimeoutError,
        errno.ECONNRESET: ServiceUnavailableError,
        errno.ECONNREFUSED: ServiceUnavailableError,
        errno.ECONNABORTED: ServiceUnavailableError,
        errno.EPIPE: ServiceUnavailableError,
        errno.EHOSTUNREACH: ServiceUnavailableError,
    },
    types={
        "builtins.TimeoutError": OperationTimeoutError,
        "builtins.FileNotFoundError": ObjectNotFoundError,
        "builtins.PermissionError": PermissionDeniedError,
        "builtins.ConnectionError": ServiceUnavailableError,
        "builtins.BrokenPipeError": ServiceUnavailableError,
    },
)

HTTP_STATUS_MAPPING = BASE_MAPPING.extend(
    "http",
    statuses={
        401: PermissionDeniedError,
        403: PermissionDeniedError,
        404: ObjectNotFoundError,
        408: OperationTimeoutError,
        416: RangeNotSatisfiableError,
        429: RateLimitedError,
        500: ServiceUnavailableError,
        502: ServiceUnavailableError,
        503: ServiceUnavailableError,
        504: OperationTimeoutError,
    },
)

S3_MAPPING = HTTP_STATUS_MAPPING.extend(
    "s3",
    codes={
        "NoSuchKey": ObjectNotFoundError,
        "NoSuchBucket": ObjectNotFoundError,
        "NotFound": ObjectNotFoundError,
        "404": ObjectNotFoundError,
        "AccessDenied": PermissionDeniedError,
        "AllAccessDisabled": PermissionDeniedError,
        "InvalidAccessKeyId": PermissionDeniedError,
        "SignatureDoesNotMatch": PermissionDeniedError,
        "Forbidden": PermissionDeniedError,
        "403": PermissionDeniedError,
        "ExpiredToken": ExpiredCredentialError,
        "TokenRefreshRequired": ExpiredCredentialError,
        "RequestTimeout": OperationTimeoutError,
        "RequestTimeTooSkewed": PermissionDeniedError,
        "InvalidRange": RangeNotSatisfiableError,
        "SlowDown": RateLimitedError,
        "Throttling": RateLimitedError,
        "ThrottlingException": RateLimitedError,
        "TooManyRequests": RateLimitedError,
        "RequestLimitExceeded": RateLimitedError,
        "InternalError": ServiceUnavailableError,
        "ServiceUnavailable": ServiceUnavailableError,
        "503": ServiceUnavailableError,
    },
    types={
        "botocore.exceptions.ReadTimeoutError": OperationTimeoutError,
        "botocore.exceptions.ConnectTimeoutError": OperationTimeoutError,
        "botocore.exceptions.EndpointConnectionError": ServiceUnavailableError,
        "botocore.exceptions.ConnectionClosedError": ServiceUnavailableError,
        "botocore.exceptions.NoCredentialsError": PermissionDeniedError,
        "urllib3.exceptions.ProtocolError": ServiceUnavailableError,
    },
)

GCS_MAPPING = HTTP_STATUS_MAPPING.extend(
    "gcs",
    types={
        "google.api_core.exceptions.NotFound": ObjectNotFoundError,
        "google.api_core.exceptions.Forbidden": PermissionDeniedError,
        "google.api_core.exceptions.Unauthorized": PermissionDeniedError,
        "google.api_core.exceptions.RequestRangeNotSatisfiable": RangeNotSatisfiableError,
        "google.api_core.exceptions.TooManyRequests": RateLimitedError,
        "google.api_core.exceptions.ServiceUnavailable": ServiceUnavailableError,
        "google.api_core.exceptions.InternalServerError": ServiceUnavailableError,
        "google.api_core.exceptions.BadGateway": ServiceUnavailableError,
        "google.api_core.exceptions.GatewayTimeout": OperationTimeoutError,
        "google.auth.exceptions.RefreshError": ExpiredCredentialError,
        "requests.exceptions.Timeout": OperationTimeoutError,
        "requests.exceptions.ConnectionError": ServiceUnavailableError,
    },
)

SFTP_MAPPING = BASE_MAPPING.extend(
    "sftp",
    types={
        "paramiko.ssh_exception.AuthenticationException": PermissionDeniedError,
        "paramiko.ssh_exception.BadHostKeyException": PermissionDeniedError,
        "paramiko.ssh_exception.NoValidConnectionsError": ServiceUnavailableError,
        "paramiko.ssh_exception.ChannelException": ServiceUnavailableError,
    },
)

FTP_MAPPING = BASE_MAPPING.extend(
    "ftp",
    codes={
        "421": ServiceUnavailableError,
        "425": ServiceUnavailableError,
        "426": ServiceUnavailableError,
        "450": ServiceUnavailableError,
        "451": ServiceUnavailableError,
        "452": RateLimitedError,
        "530": PermissionDeniedError,
        "532": PermissionDeniedError,
        "550": ObjectNotFoundError,
        "553": PermissionDeniedError,
    },
)

LOCAL_MAPPING = BASE_MAPPING


def _qualified_names(exc: BaseException) -> list[str]:
    return [f"{cls.__module__}.{cls.__qualname__}" for cls in type(exc).__mro__]


def _provider_code(exc: BaseException) -> str | None:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        code = response.get("Error", {}).get("Code")
        return str(code) if code is not None else None
    if isinstance(exc, ftplib.Error) and exc.args:
        reply = str(exc.args[0])
        return reply[:3] if reply[:3].isdigit() else None
    return None


def _http_status(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return int(status) if status is not None else None
    code = getattr(exc, "code", None)
    if isinstance(code, int) and 100 <= code <= 599:
        return code
    return None


class ErrorNormalizer:
    """Maps native exceptions onto taxonomy errors using a mapping table."""

    def normalize(self, exc: BaseException, mapping: ErrorMapping) -> StorageError:
        if isinstance(exc, StorageError):
            return exc
        error_class = self._lookup(exc, mapping)
        provider_message = str(exc) or type(exc).__name__
        if error_class is None:
            logger.warning(
                "unmapped_provider_error mapping=%s type=%s",
                mapping.name,
                type(exc).__name__,
                extra={"extra": {"mapping": mapping.name, "type": type(exc).__name__}},
            )
            error = UnknownStorageError(
                f"Unmapped {mapping.name} error: {provider_message}",
                detail=provider_message,
            )
        else:
            error = error_class(
                f"{mapping.name} error: {provider_message}", detail=provider_message
            )
        error.__cause__ = exc
        return error

    @staticmethod
    def _lookup(exc: BaseException, mapping: ErrorMapping) -> ErrorClass | None:
        code = _provider_code(exc)
        if code is not None and code in mapping.codes:
            return mapping.codes[code]
        status = _http_status(exc)
        if status is not None and status in mapping.statuses:
            return mapping.statuses[status]
        if isinstance(exc, OSError) and exc.errno in mapping.errnos:
            return mapping.errnos[exc.errno]
        for name in _qualified_names(exc):
            if name in mapping.types:
                return mapping.types[name]
        return None


default_normalizer = ErrorNormalizer()


def normalize_error(exc: BaseException, mapping: ErrorMapping) -> StorageError:
    return default_normalizer.normalize(exc, mapping)
