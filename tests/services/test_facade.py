"""Tests for the ObjectStore facade."""

from __future__ import annotations

import io
import random
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from unistore.common.config import Settings
from unistore.common.errors import (
    InvalidPathError,
    MissingCredentialError,
    ObjectNotFoundError,
    OperationTimeoutError,
    UnsupportedOperationError,
    UnsupportedSchemeError,
)
from unistore.domain.address import Scheme
from unistore.domain.control import TransferControl
from unistore.domain.models import ByteRange
from unistore.infra.credentials import CredentialResolver
from unistore.infra.storage.client import CORE_CAPABILITIES
from unistore.infra.storage.local_client import LocalAdapter
from unistore.infra.storage.sftp_client import SFTPAdapter
from unistore.services.facade import ObjectStore, Operation
from unistore.services.transfer_engine import RetryPolicy, TransferEngine

from tests.services.fake_adapter import FakeAdapter, FakeClientError

S3_ENV = {"S3_ACCESS_KEY_ID": "AKIAEXAMPLE", "S3_SECRET_ACCESS_KEY": "s3cr3t"}
SFTP_ENV = {"SFTP_USERNAME": "u", "SFTP_PASSWORD": "p"}


def _sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def fake():
    return FakeAdapter()


@pytest.fixture
def engine(no_sleep):
    return TransferEngine(
        chunk_size=4,
        retry_policy=RetryPolicy(base_delay=0.01, rng=random.Random(3)),
        sleep=no_sleep.append,
    )


@pytest.fixture
def store(fake, engine):
    return ObjectStore(
        {Scheme.S3: fake},
        credentials=CredentialResolver(environ=S3_ENV),
        engine=engine,
        settings=Settings(STORAGE_PRESIGN_EXPIRES_IN=120),
    )


class TestObjectStore:
    def test_put_then_get_returns_same_bytes(self, store, fake):
        descriptor = store.put("s3://bucket/reports/2024.csv", b"a,b,c\n1,2,3\n")

        assert descriptor.size == 12
        assert store.get("s3://bucket/reports/2024.csv").read() == b"a,b,c\n1,2,3\n"
        assert fake.credentials_seen[0].get("access_key_id") == "AKIAEXAMPLE"

    def test_get_range(self, store, fake):
        fake.put_object("bucket", "k", b"0123456789")

        assert store.get("s3://bucket/k", ByteRange(3, 5)).read() == b"345"

    def test_stat_normalizes_provider_not_found(self, store):
        with pytest.raises(ObjectNotFoundError) as excinfo:
            store.stat("s3://bucket/missing")

        assert isinstance(excinfo.value.__cause__, FakeClientError)

    def test_delete_reports_whether_object_existed(self, store, fake):
        fake.put_object("bucket", "k", b"x")

        assert store.delete("s3://bucket/k") is True
        assert store.delete("s3://bucket/k") is False

    def test_list_pages_reconstruct_the_full_set(self, store, fake):
        keys = [f"logs/{i:02d}.txt" for i in range(7)]
        for key in keys:
            fake.put_object("bucket", key, b"x")
        fake.put_object("bucket", "other/skip.txt", b"x")

        seen = []
        token = None
        pages = 0
        while True:
            items, token = store.list("s3://bucket/logs/", token, page_size=3)
            seen.extend(item.address.key for item in items)
            pages += 1
            if token is None:
                break

        assert pages == 3
        assert sorted(seen) == keys
        assert len(seen) == len(set(seen))

    def test_iter_list_follows_tokens(self, store, fake):
        for i in range(5):
            fake.put_object("bucket", f"p/{i}", b"x")

        keys = [item.address.key for item in store.iter_list("s3://bucket/p/", page_size=2)]

        assert keys == [f"p/{i}" for i in range(5)]

    def test_presign_uses_configured_expiry(self, store):
        url = store.presign("s3://bucket/k", "PUT")

        assert "method=PUT" in url
        assert "expires=120" in url

    def test_missing_capability_is_rejected_before_any_call(self, engine):
        adapter = FakeAdapter(capabilities=CORE_CAPABILITIES)
        store = ObjectStore(
            {Scheme.S3: adapter},
            credentials=CredentialResolver(environ=S3_ENV),
            engine=engine,
            settings=Settings(),
        )

        with pytest.raises(UnsupportedOperationError):
            store.presign("s3://bucket/k")
        assert adapter.credentials_seen == []

    def test_unregistered_scheme(self, store):
        with pytest.raises(UnsupportedSchemeError):
            store.stat("gcs://bucket/k")

    def test_unknown_scheme(self, store):
        with pytest.raises(UnsupportedSchemeError):
            store.stat("ftp2://host/k")

    def test_escaping_key_is_rejected(self, store):
        with pytest.raises(InvalidPathError):
            store.get("s3://bucket/../../etc/passwd")

    def test_missing_credentials_name_the_variables(self, fake, engine):
        store = ObjectStore(
            {Scheme.S3: fake},
            credentials=CredentialResolver(environ={}),
            engine=engine,
            settings=Settings(),
        )

        with pytest.raises(MissingCredentialError) as excinfo:
            store.stat("s3://bucket/k")

        assert "S3_ACCESS_KEY_ID" in str(excinfo.value)
        assert "S3_SECRET_ACCESS_KEY" in str(excinfo.value)

    def test_copy_within_provider_is_server_side(self, store, fake):
        fake.put_object("bucket", "src", b"payload")

        descriptor = store.copy("s3://bucket/src", "s3://other/dst")

        assert fake.copies == [("s3://bucket/src", "s3://other/dst")]
        assert descriptor.size == 7
        assert fake.write_streams == []

    def test_copy_across_providers_streams(self, fake, engine, tmp_path):
        fake.put_object("bucket", "src", b"0123456789")
        store = ObjectStore(
            {Scheme.S3: fake, Scheme.LOCAL: LocalAdapter(tmp_path)},
            credentials=CredentialResolver(environ=S3_ENV),
            engine=engine,
            settings=Settings(),
        )

        descriptor = store.copy("s3://bucket/src", "local://backup/copied.bin")

        assert descriptor.size == 10
        assert (tmp_path / "backup" / "copied.bin").read_bytes() == b"0123456789"
        assert fake.read_streams[0].closed


class TestExecute:
    def test_success_carries_value(self, store, fake):
        fake.put_object("bucket", "k", b"abc")

        result = store.execute("s3://bucket/k", Operation.GET)

        assert result.ok
        assert result.unwrap() == b"abc"

    def test_failure_carries_taxonomy_error(self, store):
        result = store.execute("s3://bucket/missing", "stat")

        assert not result.ok
        assert result.value is None
        assert isinstance(result.error, ObjectNotFoundError)
        with pytest.raises(ObjectNotFoundError):
            result.unwrap()

    def test_unknown_operation(self, store):
        result = store.execute("s3://bucket/k", "rename")

        assert isinstance(result.error, UnsupportedOperationError)

    def test_put_and_list(self, store):
        assert store.execute("s3://bucket/a/1", "put", b"xyz").ok

        items, token = store.execute("s3://bucket/a/", "list").unwrap()

        assert [item.address.key for item in items] == ["a/1"]
        assert token is None

    def test_listed_address_with_unnormalized_key_stays_reachable(self, store, fake):
        fake.put_object("bucket", "logs//2024/a.txt", b"abc")

        items, _ = store.list("s3://bucket/logs/")

        assert [item.address.key for item in items] == ["logs//2024/a.txt"]
        assert store.get(items[0].address).read() == b"abc"
        assert store.stat(items[0].address).size == 3
        assert store.delete(items[0].address) is True

    def test_address_for_unregistered_scheme_is_rejected(self, store, fake):
        fake.put_object("bucket", "k", b"x")
        items, _ = store.list("s3://bucket/")
        other = ObjectStore({}, credentials=CredentialResolver(environ=S3_ENV), settings=Settings())

        with pytest.raises(UnsupportedSchemeError):
            other.stat(items[0].address)


class TestOperationMetrics:
    def test_completed_get_is_recorded_once_the_stream_ends(self, store, fake):
        fake.put_object("bucket", "k", b"abcdef")
        labels = {"scheme": "s3", "operation": "get", "outcome": "ok"}
        before = _sample("storage_operations_total", labels)

        stream = store.get("s3://bucket/k")
        assert _sample("storage_operations_total", labels) == before
        assert stream.read() == b"abcdef"
        stream.close()

        assert _sample("storage_operations_total", labels) == before + 1

    def test_failing_get_is_recorded_with_its_error_code(self, store):
        labels = {"scheme": "s3", "operation": "get", "outcome": "not_found"}
        before = _sample("storage_operations_total", labels)

        with pytest.raises(ObjectNotFoundError):
            store.get("s3://bucket/missing").read()

        assert _sample("storage_operations_total", labels) == before + 1

    def test_rejected_address_is_recorded(self, store):
        labels = {"scheme": "s3", "operation": "get", "outcome": "invalid_path"}
        before = _sample("storage_operations_total", labels)

        with pytest.raises(InvalidPathError):
            store.get("s3://bucket/../../etc/passwd")

        assert _sample("storage_operations_total", labels) == before + 1

    def test_missing_credentials_are_recorded(self, fake, engine):
        store = ObjectStore(
            {Scheme.S3: fake}, credentials=CredentialResolver(environ={}), engine=engine, settings=Settings()
        )
        labels = {"scheme": "s3", "operation": "stat", "outcome": "credential_missing"}
        before = _sample("storage_operations_total", labels)

        with pytest.raises(MissingCredentialError):
            store.stat("s3://bucket/k")

        assert _sample("storage_operations_total", labels) == before + 1

    def test_store_settings_disable_metrics(self, fake, engine):
        store = ObjectStore(
            {Scheme.S3: fake},
            credentials=CredentialResolver(environ=S3_ENV),
            engine=engine,
            settings=Settings(ENABLE_METRICS=False),
        )
        labels = {"scheme": "s3", "operation": "stat", "outcome": "not_found"}
        before = _sample("storage_operations_total", labels)

        with pytest.raises(ObjectNotFoundError):
            store.stat("s3://bucket/missing")

        assert _sample("storage_operations_total", labels) == before


class TestBuckets:
    @pytest.fixture
    def local_store(self, engine, tmp_path):
        return ObjectStore(
            {Scheme.LOCAL: LocalAdapter(tmp_path)},
            credentials=CredentialResolver(environ={}),
            engine=engine,
            settings=Settings(),
        )

    def test_create_list_get_delete(self, local_store, tmp_path):
        created = local_store.create_bucket("local://photos")

        assert created.name == "photos"
        assert (tmp_path / "photos").is_dir()
        assert [bucket.name for bucket in local_store.list_buckets(Scheme.LOCAL)] == ["photos"]
        assert local_store.get_bucket("local://photos").bucket_id == "photos"

        local_store.delete_bucket("local://photos")

        assert local_store.list_buckets("local://") == []
        with pytest.raises(ObjectNotFoundError):
            local_store.get_bucket("local://photos")

    def test_bucket_identifier_must_not_carry_a_key(self, local_store):
        with pytest.raises(InvalidPathError):
            local_store.create_bucket("local://photos/2024")

    def test_adapter_without_bucket_support(self, store):
        with pytest.raises(UnsupportedOperationError):
            store.list_buckets(Scheme.S3)

    def test_unknown_scheme_for_list_buckets(self, local_store):
        with pytest.raises(UnsupportedSchemeError):
            local_store.list_buckets("nfs://")

    def test_execute_dispatches_bucket_operations(self, local_store):
        assert local_store.execute("local://logs", "create_bucket").ok

        result = local_store.execute("local://", Operation.LIST_BUCKETS)

        assert [bucket.name for bucket in result.unwrap()] == ["logs"]
        assert local_store.execute("local://logs", "delete_bucket").unwrap() is True


class TestCopyConnectionPool:
    """Streaming copies on one SFTP adapter share its connection slots."""

    PAYLOAD = b"0123456789"

    def _adapter(self, clients, max_connections):
        def connect(host, credential):
            client = MagicMock()
            sftp = client.open_sftp.return_value
            sftp.open.return_value.read.side_effect = io.BytesIO(self.PAYLOAD).read
            sftp.stat.return_value = SimpleNamespace(st_size=len(self.PAYLOAD), st_mtime=0, st_mode=0o100644)
            clients.append(client)
            return client

        settings = MagicMock(
            STORAGE_MAX_CONNECTIONS=max_connections,
            STORAGE_CONNECT_TIMEOUT=1.0,
            STORAGE_POOL_TIMEOUT=30.0,
        )
        return SFTPAdapter(settings=settings, connect=connect)

    def _store(self, adapter, engine):
        return ObjectStore(
            {Scheme.SFTP: adapter},
            credentials=CredentialResolver(environ=SFTP_ENV),
            engine=engine,
            settings=Settings(),
        )

    def test_copy_opens_the_source_before_the_destination(self, engine):
        clients = []
        adapter = self._adapter(clients, max_connections=2)

        descriptor = self._store(adapter, engine).copy("sftp://host/a.bin", "sftp://host/b.bin")

        assert descriptor.size == len(self.PAYLOAD)
        modes = [client.open_sftp.return_value.open.call_args.args[1] for client in clients]
        assert modes == ["rb", "wb"]
        adapter._slots.acquire(timeout=0)
        adapter._slots.acquire(timeout=0)

    def test_copy_with_a_single_slot_fails_by_deadline(self, engine):
        clients = []
        adapter = self._adapter(clients, max_connections=1)
        started = time.monotonic()

        with pytest.raises(OperationTimeoutError):
            self._store(adapter, engine).copy(
                "sftp://host/a.bin", "sftp://host/b.bin", control=TransferControl.with_timeout(0.3)
            )

        assert time.monotonic() - started < 5
        assert len(clients) == 1
        adapter._slots.acquire(timeout=0)
