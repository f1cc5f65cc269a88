"""Chunked, retrying, checksummed transfers over any storage adapter.

The engine owns every :class:`TransferHandle` it creates. Memory stays
bounded by the chunk size: reads yield one chunk at a time and writes hold at
most one chunk (plus whatever the source iterable hands over at once).
"""

from __future__ import annotations

import io
import logging
import math
import random
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable, Iterator, TypeVar, Union

from unistore.common.config import MIB, Settings, get_settings
from unistore.common.errors import (
    IntegrityMismatchError,
    LengthRequiredError,
    OperationCancelledError,
    RangeNotSatisfiableError,
    StorageError,
)
from unistore.domain.address import ResourceAddress
from unistore.domain.control import TransferControl
from unistore.domain.models import (
    ByteRange,
    ChunkAttempt,
    Direction,
    ObjectDescriptor,
    TransferHandle,
    TransferState,
)
from unistore.infra.credentials import Credential
from unistore.infra.observability.metrics import record_bytes, record_retry
from unistore.infra.storage.checksums import ChecksumDigest, normalize_etag
from unistore.infra.storage.client import ReadStream, StorageAdapter, WriteStream
from unistore.infra.storage.errors import ErrorNormalizer

logger = logging.getLogger("unistore.transfer")

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 5 * MIB

Source = Union[bytes, bytearray, memoryview, io.IOBase, Iterable[bytes]]


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter; delays never decrease within a chunk."""

    max_attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 10.0
    jitter: float = 0.1
    rng: random.Random = field(default_factory=random.Random)

    def delay(self, retry_number: int, previous: float = 0.0) -> float:
        """Delay before retry ``retry_number`` (1 for the first retry).

        This is ``min(max_delay, base_delay * 2 ** attempt)`` where ``attempt``
        counts the retries already made, so the first retry waits
        ``base_delay``. Jitter is added on top and the result never drops
        below ``previous``.
        """
        delay = min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))
        delay += self.rng.uniform(0, delay * self.jitter)
        return max(delay, previous)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.STORAGE_MAX_ATTEMPTS,
            base_delay=settings.STORAGE_RETRY_BASE_DELAY,
            max_delay=settings.STORAGE_RETRY_MAX_DELAY,
            jitter=settings.STORAGE_RETRY_JITTER,
        )


def iter_chunks(source: Source, chunk_size: int) -> Iterator[bytes]:
    """Re-slice ``source`` into ``chunk_size`` pieces (the last may be short)."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset : offset + chunk_size])
        return
    if hasattr(source, "read"):
        while True:
            block = source.read(chunk_size)
            if not block:
                return
            yield block
    buffer = bytearray()
    for piece in source:
        buffer.extend(piece)
        while len(buffer) >= chunk_size:
            yield bytes(buffer[:chunk_size])
            del buffer[:chunk_size]
    if buffer:
        yield bytes(buffer)


class ObjectStream:
    """Lazy, ordered chunk iterator returned by a read.

    Iterate it, or use :meth:`read` to collect the whole object. Closing or
    cancelling releases the provider connection; a cancelled stream raises
    :class:`OperationCancelledError` on the next iteration. ``on_finish``
    runs once with the error that ended the read, or ``None`` when every
    byte was delivered.
    """

    def __init__(
        self,
        handle: TransferHandle,
        chunks: Iterator[bytes],
        control: TransferControl,
        on_finish: Callable[[BaseException | None], None] | None = None,
    ) -> None:
        self.handle = handle
        self._chunks = chunks
        self._control = control
        self._on_finish = on_finish

    def _finished(self, error: BaseException | None) -> None:
        callback, self._on_finish = self._on_finish, None
        if callback is not None:
            callback(error)

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        try:
            return next(self._chunks)
        except StopIteration:
            self._finished(None)
            raise
        except BaseException as exc:
            self._finished(exc)
            raise

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def read(self) -> bytes:
        """Drain the remaining chunks into memory."""
        return b"".join(self)

    def cancel(self) -> None:
        self._control.token.cancel()

    def close(self) -> None:
        self._chunks.close()
        # a stream closed before its first chunk never ran the generator body
        self.handle.release(TransferState.CANCELLED)
        if self.handle.state is TransferState.CANCELLED:
            self._finished(OperationCancelledError("Read closed before the end of the object"))
        else:
            self._finished(None)


class TransferEngine:
    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retry_policy: RetryPolicy | None = None,
        verify_checksums: bool = True,
        normalizer: ErrorNormalizer | None = None,
        sleep: Callable[[float], None] | None = None,
        metrics_enabled: bool | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.verify_checksums = verify_checksums
        self.metrics_enabled = metrics_enabled
        self._normalizer = normalizer or ErrorNormalizer()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TransferEngine":
        settings = settings or get_settings()
        return cls(
            chunk_size=settings.STORAGE_CHUNK_SIZE,
            retry_policy=RetryPolicy.from_settings(settings),
            verify_checksums=settings.STORAGE_VERIFY_CHECKSUMS,
            metrics_enabled=settings.ENABLE_METRICS,
        )

    def normalize(self, exc: BaseException, adapter: StorageAdapter) -> StorageError:
        return self._normalizer.normalize(exc, adapter.error_mapping)

    def _backoff(self, delay: float, control: TransferControl) -> None:
        if self._sleep is None:
            control.sleep(delay)
            return
        self._sleep(delay)
        control.check()

    def _attempt(
        self,
        handle: TransferHandle,
        adapter: StorageAdapter,
        control: TransferControl,
        operation: Callable[[], T],
        *,
        chunk_index: int,
        recover: Callable[[], None] | None = None,
        retryable: bool = True,
        record: bool = True,
    ) -> T:
        """Run ``operation`` with chunk-level retry of transient failures."""
        attempt = 1
        delay = 0.0
        while True:
            control.check()
            try:
                if attempt > 1 and recover is not None:
                    recover()
                result = operation()
            except Exception as exc:
                if control.token.cancelled:
                    raise OperationCancelledError("Transfer cancelled by caller") from exc
                error = self.normalize(exc, adapter)
                if record:
                    handle.record(ChunkAttempt(chunk_index, attempt, delay, error.code))
                if not (retryable and error.retryable) or attempt >= self.retry_policy.max_attempts:
                    raise error
                delay = self.retry_policy.delay(attempt, delay)
                record_retry(adapter.scheme.value, error.code, enabled=self.metrics_enabled)
                logger.warning(
                    "chunk_retry address=%s direction=%s chunk=%d attempt=%d delay=%.3f error=%s",
                    handle.address,
                    handle.direction.value,
                    chunk_index,
                    attempt,
                    delay,
                    error.code,
                    extra={
                        "extra": {
                            "scheme": adapter.scheme.value,
                            "direction": handle.direction.value,
                            "chunk": chunk_index,
                            "attempt": attempt,
                            "delay": delay,
                            "error": error.code,
                        }
                    },
                )
                self._backoff(delay, control)
                attempt += 1
                continue
            if record:
                handle.record(ChunkAttempt(chunk_index, attempt, delay, None))
            return result

    def _chunk_size_for(self, adapter: StorageAdapter, size: int | None) -> int:
        if size is None or not adapter.max_parts:
            return self.chunk_size
        needed = math.ceil(size / adapter.max_parts)
        if needed <= self.chunk_size:
            return self.chunk_size
        return math.ceil(needed / MIB) * MIB

    def read(
        self,
        adapter: StorageAdapter,
        address: ResourceAddress,
        credential: Credential,
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
        on_finish: Callable[[BaseException | None], None] | None = None,
    ) -> ObjectStream:
        control = control or TransferControl()
        handle = TransferHandle(address=address, direction=Direction.READ, chunk_size=self.chunk_size)
        chunks = self._read_chunks(adapter, handle, credential, byte_range, control)
        return ObjectStream(handle, chunks, control, on_finish)

    def _read_chunks(
        self,
        adapter: StorageAdapter,
        handle: TransferHandle,
        credential: Credential,
        byte_range: ByteRange | None,
        control: TransferControl,
    ) -> Iterator[bytes]:
        current: list[ReadStream] = []

        def drop_stream() -> None:
            while current:
                current.pop().close()

        def open_at(offset: int) -> ReadStream | None:
            """Open the provider stream at ``offset``; ``None`` past the end."""
            if byte_range is None:
                resume = ByteRange(start=offset) if offset else None
            elif byte_range.length is not None and offset >= byte_range.length:
                return None
            else:
                resume = byte_range.advance(offset)
            try:
                return adapter.open_read(
                    handle.address, credential, byte_range=resume, control=control
                )
            except Exception as exc:
                # a reopen exactly at the end of the object is refused by HTTP providers
                if offset and isinstance(self.normalize(exc, adapter), RangeNotSatisfiableError):
                    return None
                raise

        def read_chunk() -> bytes:
            if not current:
                stream = open_at(handle.bytes_transferred)
                if stream is None:
                    return b""
                current.append(stream)
            stream = current[0]
            parts: list[bytes] = []
            wanted = handle.chunk_size
            while wanted > 0:
                block = stream.read(wanted)
                if not block:
                    break
                parts.append(block)
                wanted -= len(block)
            return b"".join(parts)

        control.token.add_callback(drop_stream)
        started = time.perf_counter()
        try:
            index = 0
            while True:
                chunk = self._attempt(
                    handle,
                    adapter,
                    control,
                    read_chunk,
                    chunk_index=index,
                    recover=drop_stream,
                )
                if not chunk:
                    break
                handle.bytes_transferred += len(chunk)
                record_bytes(
                    adapter.scheme.value, Direction.READ.value, len(chunk), enabled=self.metrics_enabled
                )
                yield chunk
                index += 1
            handle.release(TransferState.COMPLETED)
            self._log_done(handle, started)
        except OperationCancelledError:
            handle.release(TransferState.CANCELLED)
            raise
        except GeneratorExit:
            # the caller stopped iterating early
            handle.release(TransferState.CANCELLED)
            raise
        except BaseException:
            handle.release(TransferState.FAILED)
            raise
        finally:
            control.token.remove_callback(drop_stream)
            drop_stream()

    def write(
        self,
        adapter: StorageAdapter,
        address: ResourceAddress,
        credential: Credential,
        source: Source,
        *,
        size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> ObjectDescriptor:
        """Stream ``source`` to ``address`` and verify the stored checksum.

        Raises:
            LengthRequiredError: The adapter needs a size and none was given.
            IntegrityMismatchError: The provider checksum or the byte count
                differs from what was sent. The object is not rolled back.
        """
        if adapter.requires_length and size is None:
            raise LengthRequiredError(f"{adapter.scheme.value} uploads require a known size")
        control = control or TransferControl()
        handle = TransferHandle(
            address=address,
            direction=Direction.WRITE,
            chunk_size=self._chunk_size_for(adapter, size),
        )
        digest = ChecksumDigest()
        started = time.perf_counter()

        try:
            stream: WriteStream = self._attempt(
                handle,
                adapter,
                control,
                partial(
                    adapter.open_write,
                    address,
                    credential,
                    expected_size=size,
                    content_type=content_type,
                    control=control,
                ),
                chunk_index=0,
                record=False,
            )
        except BaseException as exc:
            handle.release(
                TransferState.CANCELLED
                if isinstance(exc, OperationCancelledError)
                else TransferState.FAILED
            )
            raise
        try:
            for index, chunk in enumerate(iter_chunks(source, handle.chunk_size), start=1):
                control.check()
                digest.update(chunk)
                self._attempt(
                    handle,
                    adapter,
                    control,
                    partial(stream.write_part, index, chunk),
                    chunk_index=index,
                    retryable=stream.retryable_parts,
                )
                handle.bytes_transferred += len(chunk)
                record_bytes(
                    adapter.scheme.value, Direction.WRITE.value, len(chunk), enabled=self.metrics_enabled
                )
            if size is not None and handle.bytes_transferred != size:
                raise IntegrityMismatchError(
                    f"Declared size {size} differs from {handle.bytes_transferred} bytes read",
                    expected=str(size),
                    actual=str(handle.bytes_transferred),
                )
            control.check()
            descriptor = self._attempt(
                handle,
                adapter,
                control,
                stream.complete,
                chunk_index=digest.part_count + 1,
                retryable=False,
                record=False,
            )
        except BaseException as exc:
            self._abort(stream, handle, adapter)
            handle.release(
                TransferState.CANCELLED
                if isinstance(exc, OperationCancelledError)
                else TransferState.FAILED
            )
            raise

        if self.verify_checksums:
            self._verify(adapter, handle, digest, descriptor)
        handle.release(TransferState.COMPLETED)
        self._log_done(handle, started)
        return descriptor

    def _verify(
        self,
        adapter: StorageAdapter,
        handle: TransferHandle,
        digest: ChecksumDigest,
        descriptor: ObjectDescriptor,
    ) -> None:
        expected = adapter.expected_checksum(digest)
        actual = normalize_etag(descriptor.checksum)
        if expected is None or actual is None or expected == actual:
            return
        handle.release(TransferState.FAILED)
        logger.error(
            "integrity_mismatch address=%s expected=%s actual=%s",
            handle.address,
            expected,
            actual,
            extra={"extra": {"scheme": adapter.scheme.value, "expected": expected, "actual": actual}},
        )
        raise IntegrityMismatchError(
            f"Checksum mismatch after writing {handle.address}",
            expected=expected,
            actual=actual,
        )

    def _abort(self, stream: WriteStream, handle: TransferHandle, adapter: StorageAdapter) -> None:
        try:
            stream.abort()
        except Exception:
            logger.warning(
                "abort_failed address=%s",
                handle.address,
                exc_info=True,
                extra={"extra": {"scheme": adapter.scheme.value}},
            )

    @staticmethod
    def _log_done(handle: TransferHandle, started: float) -> None:
        elapsed = time.perf_counter() - started
        logger.info(
            "transfer_completed address=%s direction=%s bytes=%d attempts=%d duration_ms=%.3f",
            handle.address,
            handle.direction.value,
            handle.bytes_transferred,
            len(handle.attempts),
            round(elapsed * 1000, 3),
            extra={
                "extra": {
                    "scheme": handle.address.scheme.value,
                    "direction": handle.direction.value,
                    "bytes": handle.bytes_transferred,
                    "attempts": len(handle.attempts),
                    "duration_ms": round(elapsed * 1000, 3),
                }
            },
        )
