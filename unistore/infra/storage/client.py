"""Storage adapter protocol and shared helpers.

Every backend implements :class:`StorageAdapter`. The facade checks the
declared :class:`Capability` set before calling an optional method.
"""

from __future__ import annotations

import contextlib
import enum
import threading
import time
from typing import TYPE_CHECKING, Iterable, Iterator, Protocol, Sequence

from unistore.common.errors import OperationTimeoutError
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import BucketInfo, ByteRange, ListPage, ObjectDescriptor

if TYPE_CHECKING:
    from unistore.infra.credentials import Credential
    from unistore.infra.storage.checksums import ChecksumDigest
    from unistore.infra.storage.errors import ErrorMapping

# how often a waiting caller re-checks its cancellation token and deadline
SLOT_POLL_INTERVAL = 0.05


class Capability(str, enum.Enum):
    GET = "get"
    PUT = "put"
    LIST = "list"
    DELETE = "delete"
    STAT = "stat"
    PRESIGN = "presign"
    COPY = "copy"
    BUCKETS = "buckets"


CORE_CAPABILITIES = frozenset(
    {Capability.GET, Capability.PUT, Capability.LIST, Capability.DELETE, Capability.STAT}
)


class ConnectionSlots:
    """Caps the provider connections one adapter instance keeps open.

    A caller waiting for a slot gives up after ``wait_timeout`` seconds, or
    earlier when its :class:`TransferControl` is cancelled or past its
    deadline.
    """

    def __init__(self, name: str, limit: int, *, wait_timeout: float) -> None:
        self.name = name
        self.limit = limit
        self.wait_timeout = wait_timeout
        self._semaphore = threading.BoundedSemaphore(limit)

    def acquire(
        self, control: TransferControl | None = None, *, timeout: float | None = None
    ) -> None:
        wait = self.wait_timeout if timeout is None else timeout
        give_up = time.monotonic() + wait
        while True:
            if control is not None:
                control.check()
            remaining = give_up - time.monotonic()
            if self._semaphore.acquire(timeout=max(0.0, min(SLOT_POLL_INTERVAL, remaining))):
                return
            if time.monotonic() >= give_up:
                raise OperationTimeoutError(
                    f"No free {self.name} connection within {wait:g}s",
                    detail=f"limit={self.limit}",
                )

    def release(self) -> None:
        self._semaphore.release()

    @contextlib.contextmanager
    def hold(self, control: TransferControl | None = None) -> Iterator[None]:
        self.acquire(control)
        try:
            yield
        finally:
            self.release()


class ReadStream(Protocol):
    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; ``b""`` once the stream is exhausted."""
        ...

    def close(self) -> None:
        """Release the underlying connection. Safe to call twice."""
        ...


class WriteStream(Protocol):
    #: Whether a part may be sent again after a transient failure.
    retryable_parts: bool

    def write_part(self, part_number: int, data: bytes) -> None:
        """Upload one part (1-based, sent in ascending order)."""
        ...

    def complete(self) -> ObjectDescriptor:
        """Finalize the object and return what the provider stored."""
        ...

    def abort(self) -> None:
        """Discard the session and close its connection. Safe to call twice."""
        ...


class StorageAdapter(Protocol):
    """Protocol defining the capability contract of a storage backend.

    Credentials are passed into every call; adapters never read them from the
    environment themselves.
    """

    scheme: Scheme
    capabilities: frozenset[Capability]
    #: Uploads must declare their size up front.
    requires_length: bool
    #: Maximum number of parts per upload, ``None`` for unbounded.
    max_parts: int | None
    error_mapping: "ErrorMapping"

    def open_read(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
    ) -> ReadStream:
        """Open a streaming read of ``address``.

        ``control`` bounds any wait for a free connection.

        Raises:
            Provider-native errors; the caller normalizes them.
        """
        ...

    def open_write(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        expected_size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> WriteStream:
        """Open a streaming write to ``address``."""
        ...

    def expected_checksum(self, digest: "ChecksumDigest") -> str | None:
        """Checksum the provider reports for the bytes in ``digest``."""
        ...

    def list_page(
        self,
        prefix: ResourceAddress,
        credential: "Credential",
        *,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> ListPage:
        """Return one page of objects whose key starts with ``prefix.key``."""
        ...

    def stat(self, address: ResourceAddress, credential: "Credential") -> ObjectDescriptor:
        """Return object metadata, raising a not-found error when absent."""
        ...

    def delete(self, address: ResourceAddress, credential: "Credential") -> bool:
        """Delete the object; ``False`` when it did not exist."""
        ...

    def presign(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        method: str,
        expires_in: int,
    ) -> str:
        """Generate a time-limited URL (``PRESIGN`` capability only)."""
        ...

    def copy(
        self,
        source: ResourceAddress,
        destination: ResourceAddress,
        credential: "Credential",
    ) -> ObjectDescriptor:
        """Server-side copy within the provider (``COPY`` capability only)."""
        ...

    def list_buckets(
        self, credential: "Credential", *, max_results: int | None = None
    ) -> list[BucketInfo]:
        """Buckets visible to ``credential`` (``BUCKETS`` capability only)."""
        ...

    def get_bucket(self, address: ResourceAddress, credential: "Credential") -> BucketInfo:
        """Raises a not-found error when the bucket does not exist."""
        ...

    def create_bucket(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        location: str | None = None,
    ) -> BucketInfo:
        ...

    def delete_bucket(self, address: ResourceAddress, credential: "Credential") -> None:
        """Remove an empty bucket."""
        ...


def paginate_sorted(
    items: Iterable[ObjectDescriptor],
    *,
    page_token: str | None,
    page_size: int,
) -> ListPage:
    """Page through descriptors ordered by key.

    The token is the last key of the previous page, so a listing can be
    restarted from any page without server-side state.
    """
    ordered: Sequence[ObjectDescriptor] = sorted(items, key=lambda d: d.address.key)
    if page_token:
        ordered = [d for d in ordered if d.address.key > page_token]
    page = list(ordered[:page_size])
    next_token = page[-1].address.key if len(ordered) > page_size else None
    return ListPage(items=page, next_token=next_token)
