"""Local filesystem adapter.

``local://bucket/key`` maps to ``<root>/bucket/key``. Writes go to a sibling
temporary file that replaces the target on completion, so readers never see
a half-written object.
"""

from __future__ import annotations

import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Iterator

from unistore.common.errors import InvalidPathError, ObjectNotFoundError, OperationError
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import BucketInfo, ByteRange, ListPage, ObjectDescriptor
from unistore.infra.storage.client import Capability, CORE_CAPABILITIES, paginate_sorted
from unistore.infra.storage.errors import LOCAL_MAPPING

if TYPE_CHECKING:
    from unistore.infra.credentials import Credential
    from unistore.infra.storage.checksums import ChecksumDigest

TEMP_SUFFIX = ".unistore-part"


class _FileReadStream:
    def __init__(self, handle: BinaryIO, remaining: int | None) -> None:
        self._handle = handle
        self._remaining = remaining

    def read(self, size: int) -> bytes:
        if self._remaining is not None:
            size = min(size, self._remaining)
            if size <= 0:
                return b""
        data = self._handle.read(size)
        if self._remaining is not None:
            self._remaining -= len(data)
        return data

    def close(self) -> None:
        self._handle.close()

    @property
    def closed(self) -> bool:
        return self._handle.closed


class _FileWriteStream:
    retryable_parts = True

    def __init__(self, adapter: "LocalAdapter", address: ResourceAddress, target: Path) -> None:
        self._adapter = adapter
        self._address = address
        self._target = target
        target.parent.mkdir(parents=True, exist_ok=True)
        self._temp = target.with_name(f"{target.name}.{uuid.uuid4().hex}{TEMP_SUFFIX}")
        self._handle: BinaryIO | None = open(self._temp, "wb")
        self._offset = 0
        self._part_offsets: dict[int, int] = {}

    def _open_handle(self) -> BinaryIO:
        if self._handle is None:
            raise OperationError(f"Write stream for {self._address} is already closed")
        return self._handle

    def write_part(self, part_number: int, data: bytes) -> None:
        handle = self._open_handle()
        # a resent part overwrites from the same offset
        start = self._part_offsets.setdefault(part_number, self._offset)
        handle.seek(start)
        handle.write(data)
        handle.truncate()
        self._offset = start + len(data)

    def complete(self) -> ObjectDescriptor:
        handle = self._open_handle()
        handle.flush()
        os.fsync(handle.fileno())
        handle.close()
        self._handle = None
        os.replace(self._temp, self._target)
        return self._adapter._describe(self._address, self._target)

    def abort(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        self._temp.unlink(missing_ok=True)


class LocalAdapter:
    """Filesystem-backed adapter rooted at a single directory."""

    scheme = Scheme.LOCAL
    capabilities = CORE_CAPABILITIES | {Capability.COPY, Capability.BUCKETS}
    requires_length = False
    max_parts = None
    error_mapping = LOCAL_MAPPING

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def _path(self, address: ResourceAddress) -> Path:
        path = (self.root / address.bucket_or_host / address.key).resolve()
        bucket_root = (self.root / address.bucket_or_host).resolve()
        if path != bucket_root and bucket_root not in path.parents:
            raise InvalidPathError(f"Path escapes the bucket root: {address}")
        return path

    def _describe(self, address: ResourceAddress, path: Path) -> ObjectDescriptor:
        info = path.stat()
        return ObjectDescriptor(
            address=address,
            size=info.st_size,
            checksum=None,
            last_modified=datetime.fromtimestamp(info.st_mtime, tz=timezone.utc),
            content_type=None,
        )

    def open_read(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
    ) -> _FileReadStream:
        handle = open(self._path(address), "rb")
        remaining = None
        if byte_range is not None:
            handle.seek(byte_range.start)
            remaining = byte_range.length
        return _FileReadStream(handle, remaining)

    def open_write(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        expected_size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> _FileWriteStream:
        if address.is_prefix:
            raise InvalidPathError(f"Cannot write to a prefix: {address}")
        return _FileWriteStream(self, address, self._path(address))

    def expected_checksum(self, digest: "ChecksumDigest") -> str | None:
        return None

    def _walk(self, prefix: ResourceAddress) -> Iterator[ObjectDescriptor]:
        bucket_root = self.root / prefix.bucket_or_host
        if not bucket_root.is_dir():
            return
        for dirpath, _dirnames, filenames in os.walk(bucket_root):
            for filename in filenames:
                if filename.endswith(TEMP_SUFFIX):
                    continue
                path = Path(dirpath) / filename
                key = path.relative_to(bucket_root).as_posix()
                if key.startswith(prefix.key):
                    yield self._describe(prefix.child(key), path)

    def list_page(
        self,
        prefix: ResourceAddress,
        credential: "Credential",
        *,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> ListPage:
        return paginate_sorted(self._walk(prefix), page_token=page_token, page_size=page_size)

    def stat(self, address: ResourceAddress, credential: "Credential") -> ObjectDescriptor:
        path = self._path(address)
        if not path.is_file():
            raise ObjectNotFoundError(f"No such object: {address}")
        return self._describe(address, path)

    def delete(self, address: ResourceAddress, credential: "Credential") -> bool:
        path = self._path(address)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def copy(
        self,
        source: ResourceAddress,
        destination: ResourceAddress,
        credential: "Credential",
    ) -> ObjectDescriptor:
        target = self._path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self._path(source), target)
        return self._describe(destination, target)

    def _bucket_root(self, address: ResourceAddress) -> Path:
        if address.key:
            raise InvalidPathError(f"Not a bucket identifier: {address}")
        return self._path(address)

    @staticmethod
    def _bucket_info(path: Path) -> BucketInfo:
        return BucketInfo(bucket_id=path.name, name=path.name)

    def list_buckets(
        self, credential: "Credential", *, max_results: int | None = None
    ) -> list[BucketInfo]:
        if not self.root.is_dir():
            return []
        buckets = [self._bucket_info(path) for path in sorted(self.root.iterdir()) if path.is_dir()]
        return buckets[:max_results] if max_results else buckets

    def get_bucket(self, address: ResourceAddress, credential: "Credential") -> BucketInfo:
        path = self._bucket_root(address)
        if not path.is_dir():
            raise ObjectNotFoundError(f"No such bucket: {address.bucket_or_host}")
        return self._bucket_info(path)

    def create_bucket(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        location: str | None = None,
    ) -> BucketInfo:
        path = self._bucket_root(address)
        path.mkdir(parents=True, exist_ok=True)
        return self._bucket_info(path)

    def delete_bucket(self, address: ResourceAddress, credential: "Credential") -> None:
        path = self._bucket_root(address)
        if not path.is_dir():
            raise ObjectNotFoundError(f"No such bucket: {address.bucket_or_host}")
        path.rmdir()
