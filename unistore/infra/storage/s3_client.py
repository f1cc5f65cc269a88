"""S3-compatible storage adapter.

Works with AWS S3, MinIO and Cloudflare R2 (which speaks the S3 wire
protocol). Uses boto3 for all storage operations.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable

from unistore.common.config import Settings, get_settings
from unistore.common.errors import (
    InvalidPathError,
    LengthRequiredError,
    ObjectNotFoundError,
    UnknownStorageError,
    UnsupportedOperationError,
)
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import BucketInfo, ByteRange, ListPage, ObjectDescriptor
from unistore.infra.storage.checksums import normalize_etag
from unistore.infra.storage.client import Capability, CORE_CAPABILITIES, ConnectionSlots
from unistore.infra.storage.errors import S3_MAPPING, normalize_error

if TYPE_CHECKING:
    from unistore.infra.credentials import Credential
    from unistore.infra.storage.checksums import ChecksumDigest

# Maximum part number allowed by S3
MAX_PART_NUMBER = 10000
PRESIGN_METHODS = {"GET": "get_object", "PUT": "put_object"}
# us-east-1 buckets report no location constraint
DEFAULT_REGION = "us-east-1"
CLIENT_CACHE_SIZE = 8

ClientFactory = Callable[["Credential"], Any]


class _BodyReadStream:
    """Wraps a botocore ``StreamingBody`` holding one connection slot."""

    def __init__(self, body: Any, release: Callable[[], None]) -> None:
        self._body = body
        self._release = release
        self.closed = False

    def read(self, size: int) -> bytes:
        return self._body.read(size)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._body.close()
        finally:
            self._release()


class _MultipartWriteStream:
    """Streams parts through a multipart upload.

    The first part is held back until a second one arrives, so objects that
    fit in one chunk go out as a single ``put_object``.
    """

    retryable_parts = True

    def __init__(
        self,
        client: Any,
        *,
        address: ResourceAddress,
        content_type: str | None,
        release: Callable[[], None],
    ) -> None:
        self._client = client
        self._address = address
        self._content_type = content_type
        self._release = release
        self._released = False
        self._pending: bytes | None = None
        self._upload_id: str | None = None
        self._parts: dict[int, str] = {}
        self._sizes: dict[int, int] = {}

    def _release_slot(self) -> None:
        if not self._released:
            self._released = True
            self._release()

    @property
    def _bucket(self) -> str:
        return self._address.bucket_or_host

    @property
    def _key(self) -> str:
        return self._address.key

    def _init_multipart_upload(self) -> str:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": self._key}
        if self._content_type:
            params["ContentType"] = self._content_type
        response = self._client.create_multipart_upload(**params)
        upload_id = response.get("UploadId")
        if not upload_id:
            raise UnknownStorageError("S3 response missing UploadId")
        return str(upload_id)

    def _upload_part(self, part_number: int, data: bytes) -> None:
        response = self._client.upload_part(
            Bucket=self._bucket,
            Key=self._key,
            UploadId=self._upload_id,
            PartNumber=int(part_number),
            Body=data,
        )
        self._parts[part_number] = str(response["ETag"])

    def write_part(self, part_number: int, data: bytes) -> None:
        if part_number > MAX_PART_NUMBER:
            raise LengthRequiredError(
                f"S3 uploads are limited to {MAX_PART_NUMBER} parts; "
                "pass the object size so the chunk size can grow"
            )
        self._sizes[part_number] = len(data)
        if part_number == 1:
            self._pending = data
            return
        if self._upload_id is None:
            self._upload_id = self._init_multipart_upload()
        if self._pending is not None:
            self._upload_part(1, self._pending)
            self._pending = None
        self._upload_part(part_number, data)

    def complete(self) -> ObjectDescriptor:
        size = sum(self._sizes.values())
        if self._upload_id is None:
            params: dict[str, Any] = {
                "Bucket": self._bucket,
                "Key": self._key,
                "Body": self._pending or b"",
            }
            if self._content_type:
                params["ContentType"] = self._content_type
            response = self._client.put_object(**params)
            self._pending = None
        else:
            multipart_payload = {
                "Parts": [
                    {"ETag": etag, "PartNumber": int(number)}
                    for number, etag in sorted(self._parts.items())
                ]
            }
            response = self._client.complete_multipart_upload(
                Bucket=self._bucket,
                Key=self._key,
                UploadId=self._upload_id,
                MultipartUpload=multipart_payload,
            )
            self._upload_id = None
        self._release_slot()
        return ObjectDescriptor(
            address=self._address,
            size=size,
            checksum=normalize_etag(response.get("ETag")),
            content_type=self._content_type,
        )

    def abort(self) -> None:
        self._pending = None
        try:
            if self._upload_id is None:
                return
            upload_id, self._upload_id = self._upload_id, None
            self._client.abort_multipart_upload(
                Bucket=self._bucket,
                Key=self._key,
                UploadId=upload_id,
            )
        finally:
            self._release_slot()


def _fingerprint(credential: "Credential") -> str:
    material = json.dumps(sorted(credential.fields.items()), default=str)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class S3Adapter:
    """S3-compatible object storage adapter.

    Clients are cached per credential fingerprint, so rotated keys get a new
    client on the next operation while repeated calls share one connection
    pool. Each client comes from its own boto3 session; sessions are not
    shared between threads. Open connections are capped by
    ``STORAGE_MAX_CONNECTIONS`` across every client of the adapter.
    """

    scheme = Scheme.S3
    capabilities = CORE_CAPABILITIES | {Capability.PRESIGN, Capability.COPY, Capability.BUCKETS}
    requires_length = False
    max_parts = MAX_PART_NUMBER
    error_mapping = S3_MAPPING

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client_factory = client_factory or self._build_client
        self._clients: OrderedDict[str, Any] = OrderedDict()
        self._clients_lock = threading.Lock()
        self._slots = ConnectionSlots(
            self.scheme.value,
            self._settings.STORAGE_MAX_CONNECTIONS,
            wait_timeout=self._settings.STORAGE_POOL_TIMEOUT,
        )

    def _endpoint(self, credential: "Credential") -> str | None:
        return credential.get("endpoint_url")

    def _region(self, credential: "Credential") -> str | None:
        return credential.get("region")

    def _build_client(self, credential: "Credential") -> Any:
        """Create a boto3 S3 client from the resolved credential."""
        try:
            import boto3.session
            from botocore.config import Config
        except ImportError as exc:
            raise UnsupportedOperationError(
                "boto3 and botocore are required for S3 storage backend. "
                "Install with: pip install boto3"
            ) from exc

        settings = self._settings
        config = Config(
            s3={"addressing_style": settings.S3_ADDRESSING_STYLE},
            max_pool_connections=settings.STORAGE_MAX_CONNECTIONS,
            connect_timeout=settings.STORAGE_CONNECT_TIMEOUT,
            # retries are driven by the transfer engine
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        session = boto3.session.Session()
        return session.client(
            "s3",
            endpoint_url=self._endpoint(credential),
            region_name=self._region(credential),
            aws_access_key_id=credential.require("access_key_id"),
            aws_secret_access_key=credential.require("secret_access_key"),
            aws_session_token=credential.get("session_token"),
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def _client(self, credential: "Credential") -> Any:
        fingerprint = _fingerprint(credential)
        with self._clients_lock:
            client = self._clients.get(fingerprint)
            if client is not None:
                self._clients.move_to_end(fingerprint)
                return client
        client = self._client_factory(credential)
        with self._clients_lock:
            self._clients[fingerprint] = client
            while len(self._clients) > CLIENT_CACHE_SIZE:
                self._clients.popitem(last=False)
        return client

    def open_read(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
    ) -> _BodyReadStream:
        params: dict[str, Any] = {"Bucket": address.bucket_or_host, "Key": address.key}
        if byte_range is not None:
            params["Range"] = byte_range.header()
        self._slots.acquire(control)
        try:
            response = self._client(credential).get_object(**params)
        except BaseException:
            self._slots.release()
            raise
        return _BodyReadStream(response["Body"], self._slots.release)

    def open_write(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        expected_size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> _MultipartWriteStream:
        if address.is_prefix:
            raise InvalidPathError(f"Cannot write to a prefix: {address}")
        client = self._client(credential)
        self._slots.acquire(control)
        return _MultipartWriteStream(
            client,
            address=address,
            content_type=content_type,
            release=self._slots.release,
        )

    def expected_checksum(self, digest: "ChecksumDigest") -> str | None:
        if digest.part_count <= 1:
            return digest.md5_hex()
        return digest.multipart_etag()

    def list_page(
        self,
        prefix: ResourceAddress,
        credential: "Credential",
        *,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> ListPage:
        params: dict[str, Any] = {
            "Bucket": prefix.bucket_or_host,
            "Prefix": prefix.key,
            "MaxKeys": int(page_size),
        }
        if page_token:
            params["ContinuationToken"] = page_token
        client = self._client(credential)
        with self._slots.hold():
            response = client.list_objects_v2(**params)
        items = [
            ObjectDescriptor(
                address=prefix.child(entry["Key"]),
                size=entry.get("Size"),
                checksum=normalize_etag(entry.get("ETag")),
                last_modified=entry.get("LastModified"),
            )
            for entry in response.get("Contents", [])
        ]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(items=items, next_token=next_token)

    def _head(self, client: Any, address: ResourceAddress) -> ObjectDescriptor:
        response = client.head_object(Bucket=address.bucket_or_host, Key=address.key)
        size = response.get("ContentLength")
        return ObjectDescriptor(
            address=address,
            size=int(size) if size is not None else None,
            checksum=normalize_etag(response.get("ETag")),
            last_modified=response.get("LastModified"),
            content_type=response.get("ContentType"),
        )

    def stat(self, address: ResourceAddress, credential: "Credential") -> ObjectDescriptor:
        client = self._client(credential)
        with self._slots.hold():
            return self._head(client, address)

    def delete(self, address: ResourceAddress, credential: "Credential") -> bool:
        client = self._client(credential)
        with self._slots.hold():
            # DeleteObject succeeds for missing keys; HEAD tells them apart
            try:
                self._head(client, address)
            except Exception as exc:
                if isinstance(normalize_error(exc, self.error_mapping), ObjectNotFoundError):
                    return False
                raise
            client.delete_object(Bucket=address.bucket_or_host, Key=address.key)
        return True

    def presign(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        method: str,
        expires_in: int,
    ) -> str:
        client_method = PRESIGN_METHODS.get(method.upper())
        if client_method is None:
            raise UnsupportedOperationError(f"Cannot presign HTTP method {method!r}")
        url = self._client(credential).generate_presigned_url(
            client_method,
            Params={"Bucket": address.bucket_or_host, "Key": address.key},
            ExpiresIn=int(expires_in),
        )
        if not url:
            raise UnknownStorageError("Generated presigned URL is empty")
        return str(url)

    def copy(
        self,
        source: ResourceAddress,
        destination: ResourceAddress,
        credential: "Credential",
    ) -> ObjectDescriptor:
        client = self._client(credential)
        with self._slots.hold():
            client.copy_object(
                Bucket=destination.bucket_or_host,
                Key=destination.key,
                CopySource={"Bucket": source.bucket_or_host, "Key": source.key},
            )
            return self._head(client, destination)

    @staticmethod
    def _bucket_name(address: ResourceAddress) -> str:
        if address.key:
            raise InvalidPathError(f"Not a bucket identifier: {address}")
        return address.bucket_or_host

    def list_buckets(
        self, credential: "Credential", *, max_results: int | None = None
    ) -> list[BucketInfo]:
        params: dict[str, Any] = {}
        if max_results:
            params["MaxBuckets"] = int(max_results)
        client = self._client(credential)
        with self._slots.hold():
            response = client.list_buckets(**params)
        return [
            BucketInfo(
                bucket_id=entry["Name"],
                name=entry["Name"],
                location=entry.get("BucketRegion"),
                created=entry.get("CreationDate"),
            )
            for entry in response.get("Buckets", [])
        ]

    def get_bucket(self, address: ResourceAddress, credential: "Credential") -> BucketInfo:
        name = self._bucket_name(address)
        client = self._client(credential)
        with self._slots.hold():
            response = client.get_bucket_location(Bucket=name)
        return BucketInfo(
            bucket_id=name,
            name=name,
            location=response.get("LocationConstraint") or DEFAULT_REGION,
        )

    def create_bucket(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        location: str | None = None,
    ) -> BucketInfo:
        name = self._bucket_name(address)
        location = location or self._region(credential)
        params: dict[str, Any] = {"Bucket": name}
        if location and location not in (DEFAULT_REGION, "auto"):
            params["CreateBucketConfiguration"] = {"LocationConstraint": location}
        client = self._client(credential)
        with self._slots.hold():
            client.create_bucket(**params)
        return BucketInfo(bucket_id=name, name=name, location=location or DEFAULT_REGION)

    def delete_bucket(self, address: ResourceAddress, credential: "Credential") -> None:
        name = self._bucket_name(address)
        client = self._client(credential)
        with self._slots.hold():
            client.delete_bucket(Bucket=name)


class R2Adapter(S3Adapter):
    """Cloudflare R2 through its S3-compatible endpoint."""

    scheme = Scheme.R2

    def _endpoint(self, credential: "Credential") -> str | None:
        explicit = credential.get("endpoint_url")
        if explicit:
            return explicit
        return f"https://{credential.require('account_id')}.r2.cloudflarestorage.com"

    def _region(self, credential: "Credential") -> str | None:
        return "auto"
