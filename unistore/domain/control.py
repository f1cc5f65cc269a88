"""Cancellation and deadline signals for streaming transfers."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from unistore.common.errors import OperationCancelledError, OperationTimeoutError


class CancellationToken:
    """Thread-safe cancel signal shared between a caller and a transfer."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True as soon as cancelled."""
        return self._event.wait(max(seconds, 0.0))


@dataclass
class TransferControl:
    token: CancellationToken = field(default_factory=CancellationToken)
    deadline: float | None = None  # time.monotonic() value

    @classmethod
    def with_timeout(
        cls, seconds: float, token: CancellationToken | None = None
    ) -> "TransferControl":
        return cls(token=token or CancellationToken(), deadline=time.monotonic() + seconds)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self) -> None:
        if self.token.cancelled:
            raise OperationCancelledError("Transfer cancelled by caller")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise OperationTimeoutError("Transfer deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Back off for ``seconds`` unless cancelled or the deadline hits first."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, max(remaining, 0.0))
        self.token.wait(seconds)
        self.check()
