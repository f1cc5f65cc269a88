"""FTP/FTPS adapter built on the standard library ``ftplib``.

``ftp://host/path`` addresses ``path`` relative to the login directory.
Set ``FTP_TLS`` to use explicit FTPS with a protected data channel.
"""

from __future__ import annotations

import contextlib
import ftplib
import posixpath
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterator

from unistore.common.config import Settings, get_settings
from unistore.common.errors import InvalidPathError, ObjectNotFoundError
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import ByteRange, ListPage, ObjectDescriptor
from unistore.infra.storage.client import CORE_CAPABILITIES, ConnectionSlots, paginate_sorted
from unistore.infra.storage.errors import FTP_MAPPING, normalize_error

if TYPE_CHECKING:
    from unistore.infra.credentials import Credential
    from unistore.infra.storage.checksums import ChecksumDigest

DEFAULT_PORT = 21
TEMP_SUFFIX = ".unistore-part"
MLSD_FACTS = ["type", "size", "modify"]

ConnectFactory = Callable[[str, "Credential"], Any]


def _as_bool(value: Any) -> bool:
    return str(value or "").lower() in {"1", "true", "t", "yes", "y", "on"}


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class _Connection:
    """A logged-in control connection holding one pool slot."""

    def __init__(self, ftp: Any, slots: ConnectionSlots) -> None:
        self.ftp = ftp
        self._slots = slots
        self.closed = False

    def close(self, *, graceful: bool = True) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if graceful:
                self.ftp.quit()
            else:
                self.ftp.close()
        except (OSError, EOFError, ftplib.Error):
            self.ftp.close()
        finally:
            self._slots.release()


class _FTPReadStream:
    def __init__(self, connection: _Connection, data_socket: Any, remaining: int | None) -> None:
        self._connection = connection
        self._socket = data_socket
        self._file = data_socket.makefile("rb")
        self._remaining = remaining

    @property
    def closed(self) -> bool:
        return self._connection.closed

    def read(self, size: int) -> bytes:
        if self._remaining is not None:
            size = min(size, self._remaining)
            if size <= 0:
                return b""
        data = self._file.read(size)
        if self._remaining is not None:
            self._remaining -= len(data)
        return data

    def close(self) -> None:
        if self._connection.closed:
            return
        self._file.close()
        self._socket.close()
        # the server answers 226 or 426 depending on whether RETR finished
        self._connection.close(graceful=False)


class _FTPWriteStream:
    """Uploads to a temporary name and renames it into place.

    A resent part reconnects and resumes the upload with ``REST`` at the
    offset where that part started.
    """

    retryable_parts = True

    def __init__(
        self,
        adapter: "FTPAdapter",
        address: ResourceAddress,
        credential: "Credential",
        control: TransferControl | None,
    ) -> None:
        self._adapter = adapter
        self._address = address
        self._credential = credential
        self._control = control
        self._temp = f"{address.key}.{uuid.uuid4().hex}{TEMP_SUFFIX}"
        self._offsets: dict[int, int] = {}
        self._offset = 0
        self._connection: _Connection | None = None
        self._socket: Any = None
        try:
            self._start(rest=None)
        except BaseException:
            self._release()
            raise

    def _start(self, rest: int | None) -> None:
        self._connection = self._adapter._connect(self._address, self._credential, self._control)
        ftp = self._connection.ftp
        ftp.voidcmd("TYPE I")
        self._socket = ftp.transfercmd(f"STOR {self._temp}", rest=rest)

    def _release(self) -> None:
        if self._connection is None:
            return
        connection, data_socket = self._connection, self._socket
        self._connection, self._socket = None, None
        if data_socket is not None:
            with contextlib.suppress(OSError):
                data_socket.close()
        connection.close(graceful=False)

    def write_part(self, part_number: int, data: bytes) -> None:
        if part_number in self._offsets:
            self._release()
            self._start(rest=self._offsets[part_number])
        start = self._offsets.setdefault(part_number, self._offset)
        self._socket.sendall(data)
        self._offset = start + len(data)

    def complete(self) -> ObjectDescriptor:
        ftp = self._connection.ftp
        self._socket.close()
        self._socket = None
        ftp.voidresp()
        ftp.rename(self._temp, self._address.key)
        size = ftp.size(self._address.key)
        connection, self._connection = self._connection, None
        connection.close()
        return ObjectDescriptor(address=self._address, size=size)

    def abort(self) -> None:
        if self._connection is None:
            return
        ftp = self._connection.ftp
        if self._socket is not None:
            with contextlib.suppress(OSError):
                self._socket.close()
            self._socket = None
        with contextlib.suppress(OSError, EOFError, ftplib.Error):
            ftp.voidresp()
            ftp.delete(self._temp)
        self._release()


class FTPAdapter:
    scheme = Scheme.FTP
    capabilities = CORE_CAPABILITIES
    requires_length = False
    max_parts = None
    error_mapping = FTP_MAPPING

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        connect: ConnectFactory | None = None,
        max_connections: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._connect_factory = connect or self._build_ftp
        self._slots = ConnectionSlots(
            "ftp",
            max_connections or self._settings.STORAGE_MAX_CONNECTIONS,
            wait_timeout=self._settings.STORAGE_POOL_TIMEOUT,
        )

    def _build_ftp(self, host: str, credential: "Credential") -> Any:
        use_tls = _as_bool(credential.get("tls"))
        ftp = ftplib.FTP_TLS() if use_tls else ftplib.FTP()
        ftp.connect(
            host=host,
            port=int(credential.get("port") or DEFAULT_PORT),
            timeout=self._settings.STORAGE_CONNECT_TIMEOUT,
        )
        try:
            ftp.login(
                user=credential.get("username") or "anonymous",
                passwd=credential.get("password") or "",
            )
            if use_tls:
                ftp.prot_p()
        except BaseException:
            ftp.close()
            raise
        return ftp

    def _connect(
        self,
        address: ResourceAddress,
        credential: "Credential",
        control: TransferControl | None = None,
    ) -> _Connection:
        self._slots.acquire(control)
        try:
            return _Connection(self._connect_factory(address.bucket_or_host, credential), self._slots)
        except BaseException:
            self._slots.release()
            raise

    @contextlib.contextmanager
    def _connection(self, address: ResourceAddress, credential: "Credential") -> Iterator[_Connection]:
        connection = self._connect(address, credential)
        try:
            yield connection
        finally:
            connection.close()

    def open_read(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
    ) -> _FTPReadStream:
        connection = self._connect(address, credential, control)
        try:
            connection.ftp.voidcmd("TYPE I")
            rest = byte_range.start if byte_range is not None and byte_range.start else None
            data_socket = connection.ftp.transfercmd(f"RETR {address.key}", rest=rest)
        except BaseException:
            connection.close(graceful=False)
            raise
        remaining = byte_range.length if byte_range is not None else None
        return _FTPReadStream(connection, data_socket, remaining)

    def open_write(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        expected_size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> _FTPWriteStream:
        if address.is_prefix:
            raise InvalidPathError(f"Cannot write to a prefix: {address}")
        return _FTPWriteStream(self, address, credential, control)

    def expected_checksum(self, digest: "ChecksumDigest") -> str | None:
        return None

    def _walk(self, ftp: Any, prefix: ResourceAddress) -> Iterator[ObjectDescriptor]:
        base = prefix.key.rstrip("/") if prefix.is_prefix else posixpath.dirname(prefix.key)
        pending = [base]
        while pending:
            directory = pending.pop()
            try:
                entries = list(ftp.mlsd(directory or "", facts=MLSD_FACTS))
            except ftplib.error_perm:
                continue
            for name, facts in entries:
                kind = facts.get("type")
                if kind in ("cdir", "pdir") or name in (".", ".."):
                    continue
                key = posixpath.join(directory, name) if directory else name
                if kind == "dir":
                    if (key + "/").startswith(prefix.key):
                        pending.append(key)
                elif key.startswith(prefix.key) and not key.endswith(TEMP_SUFFIX):
                    size = facts.get("size")
                    yield ObjectDescriptor(
                        address=prefix.child(key),
                        size=int(size) if size is not None else None,
                        last_modified=_parse_timestamp(facts.get("modify")),
                    )

    def list_page(
        self,
        prefix: ResourceAddress,
        credential: "Credential",
        *,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> ListPage:
        with self._connection(prefix, credential) as connection:
            items = list(self._walk(connection.ftp, prefix))
        return paginate_sorted(items, page_token=page_token, page_size=page_size)

    def stat(self, address: ResourceAddress, credential: "Credential") -> ObjectDescriptor:
        with self._connection(address, credential) as connection:
            ftp = connection.ftp
            ftp.voidcmd("TYPE I")
            size = ftp.size(address.key)
            reply = ftp.voidcmd(f"MDTM {address.key}")
        return ObjectDescriptor(
            address=address,
            size=size,
            last_modified=_parse_timestamp(reply[4:].strip()),
        )

    def delete(self, address: ResourceAddress, credential: "Credential") -> bool:
        with self._connection(address, credential) as connection:
            try:
                connection.ftp.delete(address.key)
            except ftplib.Error as exc:
                if isinstance(normalize_error(exc, self.error_mapping), ObjectNotFoundError):
                    return False
                raise
        return True
