import threading
import time

import pytest

from unistore.common.errors import ObjectNotFoundError, OperationCancelledError, OperationTimeoutError
from unistore.domain.address import resolve
from unistore.domain.control import CancellationToken, TransferControl
from unistore.domain.models import ByteRange, Direction, OperationResult, TransferHandle, TransferState


class TestByteRange:
    def test_header_and_length(self):
        assert ByteRange(0, 99).header() == "bytes=0-99"
        assert ByteRange(0, 99).length == 100
        assert ByteRange(10).header() == "bytes=10-"
        assert ByteRange(10).length is None

    def test_advance_keeps_end(self):
        assert ByteRange(5, 20).advance(10) == ByteRange(15, 20)

    @pytest.mark.parametrize("start,end", [(-1, None), (5, 4)])
    def test_invalid_bounds(self, start, end):
        with pytest.raises(ValueError):
            ByteRange(start, end)


class TestOperationResult:
    def test_value_and_error_are_exclusive(self):
        with pytest.raises(ValueError):
            OperationResult(value=1, error=ObjectNotFoundError("gone"))

    def test_success_and_failure(self):
        assert OperationResult.success(3).unwrap() == 3
        failure = OperationResult.failure(ObjectNotFoundError("gone"))
        assert not failure.ok
        with pytest.raises(ObjectNotFoundError):
            failure.unwrap()


class TestTransferHandle:
    def test_release_happens_once(self):
        handle = TransferHandle(resolve("s3://b/k"), Direction.READ, chunk_size=4)

        handle.release(TransferState.CANCELLED)
        handle.release(TransferState.COMPLETED)

        assert handle.state is TransferState.CANCELLED
        assert not handle.is_open


class TestCancellation:
    def test_callbacks_run_once_on_cancel(self):
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append("a"))

        token.cancel()
        token.cancel()

        assert calls == ["a"]
        assert token.cancelled

    def test_late_callback_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []

        token.add_callback(lambda: calls.append("late"))

        assert calls == ["late"]

    def test_removed_callback_is_skipped(self):
        token = CancellationToken()
        calls = []
        callback = lambda: calls.append("x")  # noqa: E731
        token.add_callback(callback)
        token.remove_callback(callback)

        token.cancel()

        assert calls == []

    def test_cancel_interrupts_backoff(self):
        control = TransferControl()
        timer = threading.Timer(0.05, control.token.cancel)
        timer.start()
        started = time.monotonic()

        with pytest.raises(OperationCancelledError):
            control.sleep(5)

        assert time.monotonic() - started < 2
        timer.join()

    def test_backoff_stops_at_deadline(self):
        control = TransferControl(deadline=time.monotonic() - 1)
        started = time.monotonic()

        with pytest.raises(OperationTimeoutError):
            control.sleep(5)

        assert time.monotonic() - started < 1

    def test_check_passes_before_deadline(self):
        control = TransferControl.with_timeout(60)

        control.check()

        assert control.remaining() > 0
