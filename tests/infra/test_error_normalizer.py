"""Tests for provider error normalization."""

import errno
import ftplib

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

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
from unistore.infra.storage.errors import (
    BASE_MAPPING,
    FTP_MAPPING,
    GCS_MAPPING,
    S3_MAPPING,
    ErrorNormalizer,
)


def client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": "boom"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "GetObject",
    )


@pytest.fixture
def normalizer():
    return ErrorNormalizer()


class TestErrorNormalizer:
    @pytest.mark.parametrize(
        "code,status,expected",
        [
            ("NoSuchKey", 404, ObjectNotFoundError),
            ("AccessDenied", 403, PermissionDeniedError),
            ("ExpiredToken", 400, ExpiredCredentialError),
            ("SlowDown", 503, RateLimitedError),
            ("InternalError", 500, ServiceUnavailableError),
            ("SomethingNew", 502, ServiceUnavailableError),
            ("InvalidRange", 416, RangeNotSatisfiableError),
        ],
    )
    def test_s3_client_errors(self, normalizer, code, status, expected):
        error = normalizer.normalize(client_error(code, status), S3_MAPPING)

        assert type(error) is expected

    def test_transport_failures_are_retryable(self, normalizer):
        exc = EndpointConnectionError(endpoint_url="https://s3.example.com")

        error = normalizer.normalize(exc, S3_MAPPING)

        assert isinstance(error, ServiceUnavailableError)
        assert error.retryable

    def test_unmapped_error_keeps_provider_message(self, normalizer):
        exc = client_error("WeirdCode", 418)

        error = normalizer.normalize(exc, S3_MAPPING)

        assert type(error) is UnknownStorageError
        assert "WeirdCode" in error.detail
        assert error.__cause__ is exc
        assert not error.retryable

    def test_oserrors_map_by_errno(self, normalizer):
        missing = normalizer.normalize(OSError(errno.ENOENT, "No such file"), BASE_MAPPING)
        denied = normalizer.normalize(OSError(errno.EACCES, "Permission denied"), BASE_MAPPING)
        timeout = normalizer.normalize(TimeoutError("timed out"), BASE_MAPPING)

        assert isinstance(missing, ObjectNotFoundError)
        assert isinstance(denied, PermissionDeniedError)
        assert isinstance(timeout, OperationTimeoutError)

    def test_ftp_reply_codes(self, normalizer):
        assert isinstance(
            normalizer.normalize(ftplib.error_perm("550 No such file"), FTP_MAPPING),
            ObjectNotFoundError,
        )
        assert isinstance(
            normalizer.normalize(ftplib.error_perm("530 Not logged in"), FTP_MAPPING),
            PermissionDeniedError,
        )
        assert isinstance(
            normalizer.normalize(ftplib.error_temp("421 Service not available"), FTP_MAPPING),
            ServiceUnavailableError,
        )

    def test_gcs_http_status_code_attribute(self, normalizer):
        class FakeApiError(Exception):
            code = 429

        error = normalizer.normalize(FakeApiError("quota"), GCS_MAPPING)

        assert isinstance(error, RateLimitedError)

    def test_taxonomy_errors_pass_through(self, normalizer):
        original = ObjectNotFoundError("gone")

        assert normalizer.normalize(original, S3_MAPPING) is original

    def test_every_result_is_a_storage_error(self, normalizer):
        assert isinstance(normalizer.normalize(ValueError("x"), BASE_MAPPING), StorageError)
