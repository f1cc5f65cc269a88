"""Unified entry point for every storage operation.

:class:`ObjectStore` resolves the address, resolves credentials, picks the
adapter registered for the scheme and delegates to the transfer engine.
Every failure reaches the caller as a taxonomy error from
:mod:`unistore.common.errors`; nothing else escapes.
"""

from __future__ import annotations

import enum
import itertools
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, NoReturn, Union

from unistore.common.config import Settings, get_settings
from unistore.common.errors import (
    InvalidPathError,
    StorageError,
    UnsupportedOperationError,
    UnsupportedSchemeError,
)
from unistore.common.logging import setup_logging
from unistore.domain.address import SCHEME_DELIMITER, ResourceAddress, Scheme, resolve
from unistore.domain.control import TransferControl
from unistore.domain.models import BucketInfo, ByteRange, ObjectDescriptor, OperationResult
from unistore.infra.credentials import Credential, CredentialResolver
from unistore.infra.observability.metrics import record_operation
from unistore.infra.storage.client import Capability, StorageAdapter
from unistore.services.transfer_engine import ObjectStream, Source, TransferEngine

logger = logging.getLogger("unistore.facade")

Target = Union[str, ResourceAddress]


class Operation(str, enum.Enum):
    GET = "get"
    PUT = "put"
    LIST = "list"
    DELETE = "delete"
    STAT = "stat"
    PRESIGN = "presign"
    COPY = "copy"
    LIST_BUCKETS = "list_buckets"
    GET_BUCKET = "get_bucket"
    CREATE_BUCKET = "create_bucket"
    DELETE_BUCKET = "delete_bucket"


REQUIRED_CAPABILITY = {
    Operation.GET: Capability.GET,
    Operation.PUT: Capability.PUT,
    Operation.LIST: Capability.LIST,
    Operation.DELETE: Capability.DELETE,
    Operation.STAT: Capability.STAT,
    Operation.PRESIGN: Capability.PRESIGN,
    Operation.COPY: Capability.GET,
    Operation.LIST_BUCKETS: Capability.BUCKETS,
    Operation.GET_BUCKET: Capability.BUCKETS,
    Operation.CREATE_BUCKET: Capability.BUCKETS,
    Operation.DELETE_BUCKET: Capability.BUCKETS,
}


def build_default_adapters(settings: Settings) -> dict[Scheme, StorageAdapter]:
    """Adapter registry covering every supported scheme."""
    from unistore.infra.storage.ftp_client import FTPAdapter
    from unistore.infra.storage.gcs_client import GCSAdapter
    from unistore.infra.storage.local_client import LocalAdapter
    from unistore.infra.storage.s3_client import R2Adapter, S3Adapter
    from unistore.infra.storage.sftp_client import SFTPAdapter

    return {
        Scheme.LOCAL: LocalAdapter(settings.STORAGE_LOCAL_ROOT),
        Scheme.S3: S3Adapter(settings=settings),
        Scheme.R2: R2Adapter(settings=settings),
        Scheme.GCS: GCSAdapter(settings=settings),
        Scheme.SFTP: SFTPAdapter(settings=settings),
        Scheme.FTP: FTPAdapter(settings=settings),
    }


def _scheme_label(target: Target | Scheme) -> str:
    """Metric label for a request that may not have resolved yet."""
    if isinstance(target, ResourceAddress):
        return target.scheme.value
    raw = str(target.value if isinstance(target, Scheme) else target)
    try:
        return Scheme(raw.split(SCHEME_DELIMITER, 1)[0].lower()).value
    except ValueError:
        return "unknown"


@dataclass
class _Call:
    operation: Operation
    scheme: str
    adapter: StorageAdapter | None = None
    started: float = field(default_factory=time.perf_counter)


class ObjectStore:
    """Provider-agnostic object storage facade.

    Holds no per-call state: any instance sharing the same adapter registry
    serves any request. Every method accepts a ``scheme://bucket/key``
    identifier or a :class:`ResourceAddress`, such as one taken from a
    listing; addresses are used as given, so provider keys that normalization
    would rewrite stay reachable.
    """

    def __init__(
        self,
        adapters: Mapping[Scheme, StorageAdapter],
        *,
        credentials: CredentialResolver | None = None,
        engine: TransferEngine | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._adapters = dict(adapters)
        self._credentials = credentials or CredentialResolver()
        self._settings = settings or get_settings()
        self._engine = engine or TransferEngine.from_settings(self._settings)

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, *, configure_logging: bool = False
    ) -> "ObjectStore":
        settings = settings or get_settings()
        if configure_logging:
            setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        return cls(build_default_adapters(settings), settings=settings)

    @property
    def schemes(self) -> frozenset[Scheme]:
        return frozenset(self._adapters)

    def resolve(self, target: Target) -> ResourceAddress:
        if isinstance(target, ResourceAddress):
            if target.scheme not in self._adapters:
                raise UnsupportedSchemeError(
                    f"No adapter registered for scheme: {target.scheme.value!r}"
                )
            return target
        return resolve(target, self._adapters)

    def _adapter(self, scheme: Scheme, operation: Operation) -> StorageAdapter:
        adapter = self._adapters.get(scheme)
        if adapter is None:
            raise UnsupportedSchemeError(f"No adapter registered for scheme: {scheme.value!r}")
        capability = REQUIRED_CAPABILITY[operation]
        if capability not in adapter.capabilities:
            raise UnsupportedOperationError(
                f"{scheme.value} does not support {operation.value}",
                detail=capability.value,
            )
        return adapter

    def _prepare(
        self, target: Target, operation: Operation, call: _Call | None = None
    ) -> tuple[ResourceAddress, StorageAdapter, Credential]:
        address = self.resolve(target)
        adapter = self._adapter(address.scheme, operation)
        if call is not None:
            call.scheme = address.scheme.value
            call.adapter = adapter
        return address, adapter, self._credentials.resolve(address.scheme)

    def _prepare_bucket(
        self, target: Target, operation: Operation, call: _Call
    ) -> tuple[ResourceAddress, StorageAdapter, Credential]:
        address, adapter, credential = self._prepare(target, operation, call)
        if address.key:
            raise InvalidPathError(f"Not a bucket identifier: {address}", detail=address.key)
        return address, adapter, credential

    def _record(self, call: _Call, outcome: str) -> None:
        elapsed = time.perf_counter() - call.started
        operation = call.operation.value
        record_operation(
            call.scheme, operation, outcome, elapsed, enabled=self._settings.ENABLE_METRICS
        )
        logger.log(
            logging.INFO if outcome == "ok" else logging.WARNING,
            "storage_operation scheme=%s operation=%s outcome=%s duration_ms=%.3f",
            call.scheme,
            operation,
            outcome,
            round(elapsed * 1000, 3),
            extra={
                "extra": {
                    "scheme": call.scheme,
                    "operation": operation,
                    "outcome": outcome,
                    "duration_ms": round(elapsed * 1000, 3),
                }
            },
        )

    def _normalize(self, exc: BaseException, call: _Call) -> StorageError | None:
        if isinstance(exc, StorageError):
            return exc
        if call.adapter is None:
            return None
        return self._engine.normalize(exc, call.adapter)

    def _fail(self, call: _Call, exc: Exception) -> NoReturn:
        error = self._normalize(exc, call)
        if error is None:
            self._record(call, "error")
            raise exc
        self._record(call, error.code)
        if error is exc:
            raise exc
        raise error from exc

    @contextmanager
    def _operation(self, target: Target | Scheme, operation: Operation) -> Iterator[_Call]:
        call = _Call(operation, _scheme_label(target))
        try:
            yield call
        except Exception as exc:
            self._fail(call, exc)
        self._record(call, "ok")

    def _finish_read(self, call: _Call, error: BaseException | None) -> None:
        if error is None:
            self._record(call, "ok")
            return
        normalized = self._normalize(error, call)
        self._record(call, normalized.code if normalized is not None else "error")

    def get(
        self,
        uri: Target,
        byte_range: ByteRange | None = None,
        *,
        control: TransferControl | None = None,
    ) -> ObjectStream:
        """Open a lazy chunked read; iterate the result or call ``read()``.

        The operation is recorded once the stream ends, fails or is closed.
        """
        call = _Call(Operation.GET, _scheme_label(uri))
        try:
            address, adapter, credential = self._prepare(uri, Operation.GET, call)
        except Exception as exc:
            self._fail(call, exc)
        return self._engine.read(
            adapter,
            address,
            credential,
            byte_range=byte_range,
            control=control,
            on_finish=lambda error: self._finish_read(call, error),
        )

    def put(
        self,
        uri: Target,
        data: Source,
        size: int | None = None,
        *,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> ObjectDescriptor:
        with self._operation(uri, Operation.PUT) as call:
            address, adapter, credential = self._prepare(uri, Operation.PUT, call)
            return self._engine.write(
                adapter,
                address,
                credential,
                data,
                size=size,
                content_type=content_type,
                control=control,
            )

    def list(
        self,
        uri_prefix: Target,
        page_token: str | None = None,
        *,
        page_size: int | None = None,
    ) -> tuple[list[ObjectDescriptor], str | None]:
        with self._operation(uri_prefix, Operation.LIST) as call:
            address, adapter, credential = self._prepare(uri_prefix, Operation.LIST, call)
            page = adapter.list_page(
                address,
                credential,
                page_token=page_token,
                page_size=page_size or self._settings.STORAGE_LIST_PAGE_SIZE,
            )
        return list(page.items), page.next_token

    def iter_list(self, uri_prefix: Target, *, page_size: int | None = None) -> Iterator[ObjectDescriptor]:
        """Follow page tokens until the listing is exhausted."""
        token: str | None = None
        while True:
            items, token = self.list(uri_prefix, token, page_size=page_size)
            yield from items
            if not token:
                return

    def delete(self, uri: Target) -> bool:
        with self._operation(uri, Operation.DELETE) as call:
            address, adapter, credential = self._prepare(uri, Operation.DELETE, call)
            return adapter.delete(address, credential)

    def stat(self, uri: Target) -> ObjectDescriptor:
        with self._operation(uri, Operation.STAT) as call:
            address, adapter, credential = self._prepare(uri, Operation.STAT, call)
            return adapter.stat(address, credential)

    def presign(self, uri: Target, method: str = "GET", expires_in: int | None = None) -> str:
        with self._operation(uri, Operation.PRESIGN) as call:
            address, adapter, credential = self._prepare(uri, Operation.PRESIGN, call)
            return adapter.presign(
                address,
                credential,
                method=method,
                expires_in=expires_in or self._settings.STORAGE_PRESIGN_EXPIRES_IN,
            )

    def copy(
        self,
        src_uri: Target,
        dst_uri: Target,
        *,
        control: TransferControl | None = None,
    ) -> ObjectDescriptor:
        """Copy an object, server-side when the provider allows it.

        Different schemes, and providers without server-side copy, stream
        through the transfer engine. The source is opened before the
        destination, so a pool with no free slot left fails by timeout or
        deadline instead of waiting on itself.
        """
        with self._operation(src_uri, Operation.COPY) as call:
            source, source_adapter, source_credential = self._prepare(src_uri, Operation.COPY, call)
            if self.resolve(dst_uri).scheme is source.scheme and (
                Capability.COPY in source_adapter.capabilities
            ):
                destination = self.resolve(dst_uri)
                return source_adapter.copy(source, destination, source_credential)
            destination, destination_adapter, destination_credential = self._prepare(
                dst_uri, Operation.PUT
            )
            control = control or TransferControl()
            with self._engine.read(
                source_adapter, source, source_credential, control=control
            ) as stream:
                first = next(stream, b"")
                return self._engine.write(
                    destination_adapter,
                    destination,
                    destination_credential,
                    itertools.chain([first], stream),
                    control=control,
                )

    def list_buckets(self, scheme: Scheme | str, *, max_results: int | None = None) -> list[BucketInfo]:
        """Buckets visible to the credentials configured for ``scheme``."""
        with self._operation(scheme, Operation.LIST_BUCKETS) as call:
            if isinstance(scheme, str):
                raw = scheme.split(SCHEME_DELIMITER, 1)[0].lower()
                try:
                    scheme = Scheme(raw)
                except ValueError:
                    raise UnsupportedSchemeError(f"Unsupported scheme: {raw!r}", detail=raw) from None
            adapter = self._adapter(scheme, Operation.LIST_BUCKETS)
            call.scheme = scheme.value
            call.adapter = adapter
            return adapter.list_buckets(self._credentials.resolve(scheme), max_results=max_results)

    def get_bucket(self, uri: Target) -> BucketInfo:
        with self._operation(uri, Operation.GET_BUCKET) as call:
            address, adapter, credential = self._prepare_bucket(uri, Operation.GET_BUCKET, call)
            return adapter.get_bucket(address, credential)

    def create_bucket(self, uri: Target, *, location: str | None = None) -> BucketInfo:
        with self._operation(uri, Operation.CREATE_BUCKET) as call:
            address, adapter, credential = self._prepare_bucket(uri, Operation.CREATE_BUCKET, call)
            return adapter.create_bucket(address, credential, location=location)

    def delete_bucket(self, uri: Target) -> None:
        with self._operation(uri, Operation.DELETE_BUCKET) as call:
            address, adapter, credential = self._prepare_bucket(uri, Operation.DELETE_BUCKET, call)
            adapter.delete_bucket(address, credential)

    def execute(self, uri: Target, operation: Operation | str, payload: Any = None) -> OperationResult:
        """Run ``operation`` and capture the outcome as an :class:`OperationResult`.

        ``payload`` is the data for ``put``, the destination URI for ``copy``,
        the page token for ``list``, a :class:`ByteRange` for ``get``, the
        HTTP method for ``presign`` and the location for ``create_bucket``.
        ``get`` results are fully read. For ``list_buckets`` only the scheme
        part of ``uri`` is used.
        """
        try:
            operation = Operation(operation)
        except ValueError:
            return OperationResult.failure(
                UnsupportedOperationError(f"Unknown operation: {operation!r}")
            )
        try:
            if operation is Operation.GET:
                with self.get(uri, payload) as stream:
                    value: Any = stream.read()
            elif operation is Operation.PUT:
                value = self.put(uri, payload)
            elif operation is Operation.LIST:
                value = self.list(uri, payload)
            elif operation is Operation.DELETE:
                value = self.delete(uri)
            elif operation is Operation.STAT:
                value = self.stat(uri)
            elif operation is Operation.PRESIGN:
                value = self.presign(uri, payload or "GET")
            elif operation is Operation.COPY:
                value = self.copy(uri, payload)
            elif operation is Operation.LIST_BUCKETS:
                value = self.list_buckets(uri.scheme if isinstance(uri, ResourceAddress) else uri)
            elif operation is Operation.GET_BUCKET:
                value = self.get_bucket(uri)
            elif operation is Operation.CREATE_BUCKET:
                value = self.create_bucket(uri, location=payload)
            else:
                self.delete_bucket(uri)
                value = True
        except StorageError as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(value)
