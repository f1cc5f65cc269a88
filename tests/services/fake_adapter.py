"""In-memory storage adapter for exercising the engine and the facade."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any

from unistore.common.errors import InvalidPathError
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.models import ByteRange, ListPage, ObjectDescriptor
from unistore.infra.storage.checksums import ChecksumDigest
from unistore.infra.storage.client import CORE_CAPABILITIES, Capability, paginate_sorted
from unistore.infra.storage.errors import S3_MAPPING, ErrorMapping


class FakeClientError(Exception):
    """Carries a botocore-shaped ``response`` without importing botocore."""

    def __init__(self, code: str, status: int = 400) -> None:
        super().__init__(f"An error occurred ({code})")
        self.response = {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        }


def transient() -> Exception:
    return FakeClientError("SlowDown", 503)


class FakeReadStream:
    def __init__(self, adapter: "FakeAdapter", data: bytes, start: int, end: int) -> None:
        self._adapter = adapter
        self._data = data
        self.position = start
        self._end = end
        self.closed = False

    def read(self, size: int) -> bytes:
        if self.closed:
            raise ValueError("read from a closed stream")
        failures = self._adapter.read_failures.get(self.position)
        if failures:
            raise failures.pop(0)
        stop = min(self.position + size, self._end)
        block = self._data[self.position : stop]
        self.position = stop
        return block

    def close(self) -> None:
        self.closed = True


class FakeWriteStream:
    def __init__(self, adapter: "FakeAdapter", address: ResourceAddress, content_type: str | None) -> None:
        self._adapter = adapter
        self._address = address
        self._content_type = content_type
        self.retryable_parts = adapter.retryable_parts
        self.parts: dict[int, bytes] = {}
        self.part_calls: list[int] = []
        self.completed = False
        self.aborted = False

    def write_part(self, part_number: int, data: bytes) -> None:
        self.part_calls.append(part_number)
        failures = self._adapter.write_failures.get(part_number)
        if failures:
            raise failures.pop(0)
        self.parts[part_number] = data

    def complete(self) -> ObjectDescriptor:
        data = b"".join(self.parts[number] for number in sorted(self.parts))
        self._adapter.objects[self._adapter.key_of(self._address)] = data
        self.completed = True
        checksum = "0" * 32 if self._adapter.corrupt_checksum else hashlib.md5(data).hexdigest()
        return ObjectDescriptor(
            address=self._address,
            size=len(data),
            checksum=checksum,
            content_type=self._content_type,
        )

    def abort(self) -> None:
        self.aborted = True


@dataclass
class FakeAdapter:
    """Dict-backed adapter with hooks for injected failures."""

    scheme: Scheme = Scheme.S3
    capabilities: frozenset = CORE_CAPABILITIES | {Capability.PRESIGN, Capability.COPY}
    requires_length: bool = False
    max_parts: int | None = None
    error_mapping: ErrorMapping = S3_MAPPING
    retryable_parts: bool = True
    corrupt_checksum: bool = False
    # answer reads starting at or past the end like S3 does (416 InvalidRange)
    strict_ranges: bool = False
    objects: dict[tuple[str, str], bytes] = field(default_factory=dict)
    # absolute object offset -> errors raised by successive reads at that offset
    read_failures: dict[int, list[Exception]] = field(default_factory=dict)
    # part number -> errors raised by successive uploads of that part
    write_failures: dict[int, list[Exception]] = field(default_factory=dict)
    open_write_failures: list[Exception] = field(default_factory=list)
    read_streams: list[FakeReadStream] = field(default_factory=list)
    read_ranges: list[ByteRange | None] = field(default_factory=list)
    write_streams: list[FakeWriteStream] = field(default_factory=list)
    copies: list[tuple[str, str]] = field(default_factory=list)
    credentials_seen: list[Any] = field(default_factory=list)

    @staticmethod
    def key_of(address: ResourceAddress) -> tuple[str, str]:
        return address.bucket_or_host, address.key

    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        self.objects[(bucket, key)] = data

    def _load(self, address: ResourceAddress) -> bytes:
        try:
            return self.objects[self.key_of(address)]
        except KeyError:
            raise FakeClientError("NoSuchKey", 404) from None

    def open_read(self, address, credential, *, byte_range=None, control=None) -> FakeReadStream:
        self.credentials_seen.append(credential)
        self.read_ranges.append(byte_range)
        data = self._load(address)
        start = byte_range.start if byte_range else 0
        if self.strict_ranges and data and start >= len(data):
            raise FakeClientError("InvalidRange", 416)
        end = len(data)
        if byte_range is not None and byte_range.end is not None:
            end = min(end, byte_range.end + 1)
        stream = FakeReadStream(self, data, start, end)
        self.read_streams.append(stream)
        return stream

    def open_write(
        self, address, credential, *, expected_size=None, content_type=None, control=None
    ) -> FakeWriteStream:
        self.credentials_seen.append(credential)
        if address.is_prefix:
            raise InvalidPathError(f"Cannot write to a prefix: {address}")
        if self.open_write_failures:
            raise self.open_write_failures.pop(0)
        stream = FakeWriteStream(self, address, content_type)
        self.write_streams.append(stream)
        return stream

    def expected_checksum(self, digest: ChecksumDigest) -> str | None:
        return digest.md5_hex()

    def _describe(self, address: ResourceAddress) -> ObjectDescriptor:
        data = self._load(address)
        return ObjectDescriptor(
            address=address, size=len(data), checksum=hashlib.md5(data).hexdigest()
        )

    def list_page(self, prefix, credential, *, page_token=None, page_size=1000) -> ListPage:
        items = [
            self._describe(prefix.child(key))
            for bucket, key in self.objects
            if bucket == prefix.bucket_or_host and key.startswith(prefix.key)
        ]
        return paginate_sorted(items, page_token=page_token, page_size=page_size)

    def stat(self, address, credential) -> ObjectDescriptor:
        return self._describe(address)

    def delete(self, address, credential) -> bool:
        return self.objects.pop(self.key_of(address), None) is not None

    def presign(self, address, credential, *, method, expires_in) -> str:
        return f"https://fake.example/{address.bucket_or_host}/{address.key}?method={method}&expires={expires_in}"

    def copy(self, source, destination, credential) -> ObjectDescriptor:
        self.objects[self.key_of(destination)] = self._load(source)
        self.copies.append((str(source), str(destination)))
        return self._describe(destination)
