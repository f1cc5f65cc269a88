"""SFTP adapter.

``sftp://host/path`` addresses ``path`` relative to the login directory.
Every stream holds its own SSH session; the adapter caps concurrent sessions
per instance.

Dependencies:
    - paramiko
"""

from __future__ import annotations

import contextlib
import posixpath
import stat as stat_module
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterator

from unistore.common.config import Settings, get_settings
from unistore.common.errors import InvalidPathError, ObjectNotFoundError, UnsupportedOperationError
from unistore.domain.address import ResourceAddress, Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import ByteRange, ListPage, ObjectDescriptor
from unistore.infra.storage.client import CORE_CAPABILITIES, ConnectionSlots, paginate_sorted
from unistore.infra.storage.errors import SFTP_MAPPING, normalize_error

if TYPE_CHECKING:
    from unistore.infra.credentials import Credential
    from unistore.infra.storage.checksums import ChecksumDigest

DEFAULT_PORT = 22
TEMP_SUFFIX = ".unistore-part"

ConnectFactory = Callable[[str, "Credential"], Any]


def _describe(address: ResourceAddress, attrs: Any) -> ObjectDescriptor:
    mtime = getattr(attrs, "st_mtime", None)
    return ObjectDescriptor(
        address=address,
        size=getattr(attrs, "st_size", None),
        last_modified=datetime.fromtimestamp(mtime, tz=timezone.utc) if mtime else None,
    )


class _Session:
    """One SSH connection plus its SFTP channel, holding a pool slot."""

    def __init__(self, ssh: Any, slots: ConnectionSlots) -> None:
        self._ssh = ssh
        self._slots = slots
        self.sftp = ssh.open_sftp()
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.sftp.close()
            self._ssh.close()
        finally:
            self._slots.release()


class _SFTPReadStream:
    def __init__(self, session: _Session, handle: Any, remaining: int | None) -> None:
        self._session = session
        self._handle = handle
        self._remaining = remaining

    @property
    def closed(self) -> bool:
        return self._session.closed

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
        if self._session.closed:
            return
        try:
            self._handle.close()
        finally:
            self._session.close()


class _SFTPWriteStream:
    """Writes to a temporary sibling and renames it into place on completion.

    A resent part reconnects, reopens the temporary file and seeks back to
    the offset where that part started.
    """

    retryable_parts = True

    def __init__(
        self,
        adapter: "SFTPAdapter",
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
        self._session: _Session | None = None
        self._handle: Any = None
        try:
            self._open("wb")
        except BaseException:
            self._release()
            raise

    def _open(self, mode: str) -> None:
        self._session = self._adapter._connect(self._address, self._credential, self._control)
        self._handle = self._session.sftp.open(self._temp, mode)

    def _reopen(self) -> None:
        self._release()
        self._open("r+b")

    def _release(self) -> None:
        if self._session is None:
            return
        session, handle = self._session, self._handle
        self._session, self._handle = None, None
        if handle is not None:
            # the connection may already be dead; closing it must not mask the cause
            with contextlib.suppress(Exception):
                handle.close()
        session.close()

    def write_part(self, part_number: int, data: bytes) -> None:
        if part_number in self._offsets:
            self._reopen()
        start = self._offsets.setdefault(part_number, self._offset)
        self._handle.seek(start)
        self._handle.write(data)
        self._offset = start + len(data)

    def complete(self) -> ObjectDescriptor:
        sftp = self._session.sftp
        self._handle.close()
        sftp.posix_rename(self._temp, self._address.key)
        attrs = sftp.stat(self._address.key)
        session, self._session, self._handle = self._session, None, None
        session.close()
        return _describe(self._address, attrs)

    def abort(self) -> None:
        if self._session is None:
            return
        sftp = self._session.sftp
        if self._handle is not None:
            with contextlib.suppress(Exception):
                self._handle.close()
            self._handle = None
        with contextlib.suppress(Exception):
            sftp.remove(self._temp)
        self._release()


class SFTPAdapter:
    scheme = Scheme.SFTP
    capabilities = CORE_CAPABILITIES
    requires_length = False
    max_parts = None
    error_mapping = SFTP_MAPPING

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        connect: ConnectFactory | None = None,
        max_connections: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._connect_factory = connect or self._build_ssh_client
        self._slots = ConnectionSlots(
            "sftp",
            max_connections or self._settings.STORAGE_MAX_CONNECTIONS,
            wait_timeout=self._settings.STORAGE_POOL_TIMEOUT,
        )

    def _build_ssh_client(self, host: str, credential: "Credential") -> Any:
        try:
            import paramiko
        except ImportError as exc:
            raise UnsupportedOperationError(
                "paramiko is required for the SFTP backend. Install with: pip install paramiko"
            ) from exc

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
        client.connect(
            hostname=host,
            port=int(credential.get("port") or DEFAULT_PORT),
            username=credential.require("username"),
            password=credential.get("password"),
            key_filename=credential.get("private_key_path"),
            timeout=self._settings.STORAGE_CONNECT_TIMEOUT,
            allow_agent=False,
            look_for_keys=False,
        )
        return client

    def _connect(
        self,
        address: ResourceAddress,
        credential: "Credential",
        control: TransferControl | None = None,
    ) -> _Session:
        self._slots.acquire(control)
        ssh = None
        try:
            ssh = self._connect_factory(address.bucket_or_host, credential)
            return _Session(ssh, self._slots)
        except BaseException:
            if ssh is not None:
                with contextlib.suppress(Exception):
                    ssh.close()
            self._slots.release()
            raise

    @contextlib.contextmanager
    def _session(self, address: ResourceAddress, credential: "Credential") -> Iterator[_Session]:
        session = self._connect(address, credential)
        try:
            yield session
        finally:
            session.close()

    def open_read(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        byte_range: ByteRange | None = None,
        control: TransferControl | None = None,
    ) -> _SFTPReadStream:
        session = self._connect(address, credential, control)
        try:
            handle = session.sftp.open(address.key, "rb")
            remaining = None
            if byte_range is not None:
                handle.seek(byte_range.start)
                remaining = byte_range.length
        except BaseException:
            session.close()
            raise
        return _SFTPReadStream(session, handle, remaining)

    def open_write(
        self,
        address: ResourceAddress,
        credential: "Credential",
        *,
        expected_size: int | None = None,
        content_type: str | None = None,
        control: TransferControl | None = None,
    ) -> _SFTPWriteStream:
        if address.is_prefix:
            raise InvalidPathError(f"Cannot write to a prefix: {address}")
        return _SFTPWriteStream(self, address, credential, control)

    def expected_checksum(self, digest: "ChecksumDigest") -> str | None:
        return None

    def _walk(self, sftp: Any, prefix: ResourceAddress) -> Iterator[ObjectDescriptor]:
        base = posixpath.dirname(prefix.key.rstrip("/")) if not prefix.is_prefix else prefix.key.rstrip("/")
        pending = [base]
        while pending:
            directory = pending.pop()
            try:
                entries = sftp.listdir_attr(directory or ".")
            except FileNotFoundError:
                continue
            for attrs in entries:
                key = posixpath.join(directory, attrs.filename) if directory else attrs.filename
                if stat_module.S_ISDIR(attrs.st_mode or 0):
                    if (key + "/").startswith(prefix.key) or prefix.key.startswith(key + "/"):
                        pending.append(key)
                elif key.startswith(prefix.key) and not key.endswith(TEMP_SUFFIX):
                    yield _describe(prefix.child(key), attrs)

    def list_page(
        self,
        prefix: ResourceAddress,
        credential: "Credential",
        *,
        page_token: str | None = None,
        page_size: int = 1000,
    ) -> ListPage:
        with self._session(prefix, credential) as session:
            items = list(self._walk(session.sftp, prefix))
        return paginate_sorted(items, page_token=page_token, page_size=page_size)

    def stat(self, address: ResourceAddress, credential: "Credential") -> ObjectDescriptor:
        with self._session(address, credential) as session:
            attrs = session.sftp.stat(address.key)
        if stat_module.S_ISDIR(attrs.st_mode or 0):
            raise ObjectNotFoundError(f"No such object: {address}")
        return _describe(address, attrs)

    def delete(self, address: ResourceAddress, credential: "Credential") -> bool:
        with self._session(address, credential) as session:
            try:
                session.sftp.remove(address.key)
            except Exception as exc:
                if isinstance(normalize_error(exc, self.error_mapping), ObjectNotFoundError):
                    return False
                raise
        return True
