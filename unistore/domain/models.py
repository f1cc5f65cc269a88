"""Value objects produced and consumed by storage operations."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Sequence, TypeVar

from unistore.common.errors import StorageError
from unistore.domain.address import ResourceAddress

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ObjectDescriptor:
    """Metadata for a stored object.

    Fields the provider does not report stay ``None``.
    """

    address: ResourceAddress
    size: int | None = None
    checksum: str | None = None
    last_modified: datetime | None = None
    content_type: str | None = None


@dataclass(frozen=True, slots=True)
class ByteRange:
    """Inclusive byte range; ``end=None`` reads to the end of the object."""

    start: int = 0
    end: int | None = None

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError("ByteRange.start must be >= 0")
        if self.end is not None and self.end < self.start:
            raise ValueError("ByteRange.end must be >= start")

    @property
    def length(self) -> int | None:
        if self.end is None:
            return None
        return self.end - self.start + 1

    def advance(self, offset: int) -> "ByteRange":
        return ByteRange(start=self.start + offset, end=self.end)

    def header(self) -> str:
        """Value for an HTTP ``Range`` header."""
        if self.end is None:
            return f"bytes={self.start}-"
        return f"bytes={self.start}-{self.end}"


@dataclass(frozen=True, slots=True)
class BucketInfo:
    """A bucket as the provider reports it.

    ``bucket_id`` is often the same as ``name``.
    """

    bucket_id: str
    name: str
    location: str | None = None
    created: datetime | None = None


@dataclass(frozen=True, slots=True)
class ListPage:
    items: Sequence[ObjectDescriptor]
    next_token: str | None = None


class Direction(str, enum.Enum):
    READ = "read"
    WRITE = "write"


class TransferState(str, enum.Enum):
    OPEN = "open"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ChunkAttempt:
    chunk_index: int
    attempt: int
    delay: float
    error_code: str | None = None


@dataclass
class TransferHandle:
    """State of one streaming session, owned by the transfer engine."""

    address: ResourceAddress
    direction: Direction
    chunk_size: int
    bytes_transferred: int = 0
    state: TransferState = TransferState.OPEN
    attempts: list[ChunkAttempt] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state is TransferState.OPEN

    def record(self, attempt: ChunkAttempt) -> None:
        self.attempts.append(attempt)

    def release(self, state: TransferState) -> None:
        if self.state is TransferState.OPEN:
            self.state = state


@dataclass(frozen=True, slots=True)
class OperationResult(Generic[T]):
    """Either a success value or a taxonomy error, never both."""

    value: T | None = None
    error: StorageError | None = None

    def __post_init__(self) -> None:
        if self.error is not None and self.value is not None:
            raise ValueError("OperationResult cannot hold both a value and an error")

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: StorageError) -> "OperationResult[T]":
        return cls(error=error)
