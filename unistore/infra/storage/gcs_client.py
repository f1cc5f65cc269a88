"""Google Cloud Storage adapter.

Dependencies:
    - google-cloud-storage
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable

from unistore.common.config import Settings, get_settings
from unistore.common.errors import (
    InvalidPathError,
    ObjectNotFoundError,
    UnknownStorageError,
    UnsupportedOperationError,
)
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import BucketInfo, ByteRange, ListPage, ObjectDescriptor
from unistore.infra.storage.client import Capability, CORE_CAPABILITIES
from unistore.infra.storage.errors import GCS_MAPPING, normalize_error

if TYPE_CHECKING:
    from unistore.infra.credentials import Credential
    from unistore.infra.storage.checksums import ChecksumDigest

PRESIGN_METHODS = ("GET", "PUT")

ClientFactory = Callable[["Credential"], Any]


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").lower() in {"1", "true", "t", "yes", "y", "on"}


def _bucket_info(bucket: Any) -> BucketInfo:
    return BucketInfo(
        bucket_id=bucket.id or bucket.name,
        name=bucket.name,
        location=bucket.location,
        created=bucket.time_created,
    )


def _describe(address: ResourceAddress, blob: Any) -> ObjectDescriptor:
    return ObjectDescriptor(
        address=address,
        size=blob.size,
        checksum=blob.md5_hash,
        last_modified=blob.updated,
        content_type=blob.content_type,
    )


class _BlobReadStream:
    def __init__(self, reader: Any, remaining: int | None) -> None:
        self._reader = reader
        self._remaining = remaining
        self.closed = False

    def read(self, size: int) -> bytes:
        if self._remaining is not None:
            size = min(size, self._remaining)
            if size <= 0:
                return b""
        data = self._reader.read(size)
        if self._remaining is not None:
            self._remaining -= len(data)
        return data

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._reader.close()


class _BlobWriteStream:
    """Resumable upload through ``Blob.open("wb")``.

    The writer keeps no per-part state, so a part cannot be resent after a
    failure; the client library applies its own retry to each request.
    """

    retryable_parts = False

    def __init__(self, blob: Any, address: ResourceAddress, writer: Any) -> None:
        self._blob = blob
        self._address = address
        self._writer = writer

    def write_part(self, part_number: int, data: bytes) -> None:
        self._writer.write(data)

    def complete(self) -> ObjectDescriptor:
        self._writer.close()
        self._blob.reload()
        return _describe(self._address, self._blob)

    def abort(self) -> None:
        # closing would commit the object; dropping the writer leaves the
        # resumable session to expire unfinished
        self._writer = None


class GCSAdapter:
    scheme = Scheme.GCS
    capabilities = CORE_CAPABILITIES | {Capability.PRESIGN, Capability.COPY, Capability.BUCKETS}
    requires_length = False
    max_parts = None
    error_mapping = GCS_MAPPING

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client_factory = client_factory or self._build_client

    @staticmethod
    def _build_client(credential: "Credential") -> Any:
        try:
            from google.cloud import storage
        except ImportError as exc:
            raise UnsupportedOperationError(
                "google-cloud-storage is required for the GCS backend. "
                "Install with: pip install google-cloud-storage"
            ) from exc

        if _as_bool(credential.get("anonymous")):
            return storage.Client.create_anonymous_client()
        return storage.Client.from_service_account_info(
            credential.require("service_account_info"),
            project=credential.get("project"),
        )

    def _blob(self, address: ResourceAddress, credential: "Credential") -> Any:
        client = self._client_factory(credential)
        return client.bucket(address.bucket_or_host).blob(address.key)

    def open_read(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
    ) -> _BlobReadStream:
        reader = self._blob(address, credential).open(
            "rb", chunk_size=self._settings.STORAGE_CHUNK_SIZE
        )
        remaining = None
        if byte_range is not None:
            reader.seek(byte_range.start)
            remaining = byte_range.length
        return _BlobReadStream(reader, remaining)

    def open_write(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        expected_size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> _BlobWriteStream:
        if address.is_prefix:
            raise InvalidPathError(f"Cannot write to a prefix: {address}")
        blob = self._blob(address, credential)
        writer = blob.open(
            "wb",
            content_type=content_type,
            chunk_size=self._settings.STORAGE_CHUNK_SIZE,
            ignore_flush=True,
        )
        return _BlobWriteStream(blob, address, writer)

    def expected_checksum(self, digest: "ChecksumDigest") -> str | None:
        return digest.md5_base64()

    def list_page(
        self,
        prefix: ResourceAddress,
        credential: "Credential",
        *,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> ListPage:
        iterator = self._client_factory(credential).list_blobs(
            prefix.bucket_or_host,
            prefix=prefix.key or None,
            page_size=int(page_size),
            page_token=page_token,
        )
        page = next(iterator.pages, None)
        if page is None:
            return ListPage(items=[])
        items = [_describe(prefix.child(blob.name), blob) for blob in page]
        return ListPage(items=items, next_token=iterator.next_page_token or None)

    def stat(self, address: ResourceAddress, credential: "Credential") -> ObjectDescriptor:
        bucket = self._client_factory(credential).bucket(address.bucket_or_host)
        blob = bucket.get_blob(address.key)
        if blob is None:
            raise ObjectNotFoundError(f"No such object: {address}")
        return _describe(address, blob)

    def delete(self, address: ResourceAddress, credential: "Credential") -> bool:
        try:
            self._blob(address, credential).delete()
        except Exception as exc:
            if isinstance(normalize_error(exc, self.error_mapping), ObjectNotFoundError):
                return False
            raise
        return True

    def presign(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        method: str,
        expires_in: int,
    ) -> str:
        method = method.upper()
        if method not in PRESIGN_METHODS:
            raise UnsupportedOperationError(f"Cannot presign HTTP method {method!r}")
        url = self._blob(address, credential).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=int(expires_in)),
            method=method,
        )
        if not url:
            raise UnknownStorageError("Generated signed URL is empty")
        return str(url)

    def copy(
        self,
        source: ResourceAddress,
        destination: ResourceAddress,
        credential: "Credential",
    ) -> ObjectDescriptor:
        client = self._client_factory(credential)
        source_bucket = client.bucket(source.bucket_or_host)
        copied = source_bucket.copy_blob(
            source_bucket.blob(source.key),
            client.bucket(destination.bucket_or_host),
            destination.key,
        )
        return _describe(destination, copied)

    @staticmethod
    def _bucket_name(address: ResourceAddress) -> str:
        if address.key:
            raise InvalidPathError(f"Not a bucket identifier: {address}")
        return address.bucket_or_host

    def list_buckets(
        self, credential: "Credential", *, max_results: int | None = None
    ) -> list[BucketInfo]:
        client = self._client_factory(credential)
        buckets = client.list_buckets(max_results=max_results, project=credential.get("project"))
        return [_bucket_info(bucket) for bucket in buckets]

    def get_bucket(self, address: ResourceAddress, credential: "Credential") -> BucketInfo:
        client = self._client_factory(credential)
        return _bucket_info(client.get_bucket(self._bucket_name(address)))

    def create_bucket(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        location: str | None = None,
    ) -> BucketInfo:
        client = self._client_factory(credential)
        bucket = client.create_bucket(
            self._bucket_name(address),
            project=credential.get("project"),
            location=location,
        )
        return _bucket_info(bucket)

    def delete_bucket(self, address: ResourceAddress, credential: "Credential") -> None:
        self._client_factory(credential).bucket(self._bucket_name(address)).delete()
