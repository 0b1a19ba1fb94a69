"""
Mock implementations for testing.

These classes implement the abstract interfaces with in-memory behavior
suitable for unit testing without a device attached.
"""

import logging
from collections import deque
from typing import Callable, List, Optional, Tuple

from .errors import PortUnavailable, TransportIOError, TransportTimeout
from .interfaces import ClockInterface, PortInfo, ProgressSink, TransportInterface


class MockTransport(TransportInterface):
    """
    Mock transport for testing.

    Provides a queue-based simulation of a device link. Test code can inject
    bytes with inject_bytes() and read what the engine sent with get_sent().
    A ``responder`` callable, given each written chunk, may return bytes the
    simulated device sends back. Reads never block: an empty receive buffer
    is an immediate TransportTimeout.
    """

    def __init__(self, responder: Optional[Callable[[bytes], Optional[bytes]]] = None,
                 port_info: Optional[PortInfo] = None, baud_capable: bool = True):
        self.responder = responder
        self._is_open = False
        self._port = ""
        self._rx: deque = deque()
        self._tx: List[bytes] = []
        self._fail_on_open = False
        self._fail_reads_after: Optional[int] = None
        self._fail_writes = False
        self._read_count = 0
        self._info = port_info
        self._baud_capable = baud_capable
        self.baud_history: List[int] = []
        self.open_count = 0

    def open(self, port: str, timeout: float = 1.0) -> None:
        if self._fail_on_open:
            raise PortUnavailable(f"cannot open {port}")
        self._port = port
        self._is_open = True
        self.open_count += 1

    def close(self) -> None:
        self._is_open = False

    def is_open(self) -> bool:
        return self._is_open

    def read(self, size: int, timeout: float) -> bytes:
        if not self._is_open:
            raise TransportIOError("port is not open")
        self._read_count += 1
        if self._fail_reads_after is not None and self._read_count > self._fail_reads_after:
            raise TransportIOError("device vanished")
        if not self._rx:
            raise TransportTimeout("no data")
        chunk = self._rx.popleft()
        if len(chunk) > size:
            self._rx.appendleft(chunk[size:])
            chunk = chunk[:size]
        return chunk

    def write(self, data: bytes) -> int:
        if not self._is_open or self._fail_writes:
            raise TransportIOError("write failed")
        data = bytes(data)
        self._tx.append(data)
        if self.responder:
            reply = self.responder(data)
            if reply:
                self.inject_bytes(reply)
        return len(data)

    @property
    def supports_baud_rate(self) -> bool:
        return self._baud_capable

    def set_baud_rate(self, rate: int) -> None:
        if not self._baud_capable:
            super().set_baud_rate(rate)
        self.baud_history.append(rate)

    @property
    def port_info(self) -> Optional[PortInfo]:
        return self._info

    # Test helper methods

    def inject_bytes(self, data: bytes) -> None:
        """Inject raw bytes into the receive buffer."""
        if data:
            self._rx.append(bytes(data))

    def get_sent(self) -> List[bytes]:
        """Get all data sent via write() (for testing)."""
        return self._tx.copy()

    def clear_sent(self) -> None:
        self._tx.clear()

    def pending(self) -> int:
        return sum(len(c) for c in self._rx)

    def set_fail_on_open(self, fail: bool) -> None:
        """Make open() fail (for testing error handling)."""
        self._fail_on_open = fail

    def set_fail_reads_after(self, reads: Optional[int]) -> None:
        """Simulate an unplug after N successful reads."""
        self._fail_reads_after = reads
        self._read_count = 0

    def set_fail_writes(self, fail: bool) -> None:
        self._fail_writes = fail


class MockClock(ClockInterface):
    """
    Controllable clock for testing.

    sleep() advances time instead of blocking.
    """

    def __init__(self, start: float = 1000.0):
        self._now = start
        self.sleep_calls: List[float] = []

    def monotonic(self) -> float:
        return self._now

    def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        self._now += seconds

    def advance(self, seconds: float) -> None:
        self._now += seconds


class RecordingSink(ProgressSink):
    """Keeps every progress and log event for assertions."""

    def __init__(self, on_progress_hook: Optional[Callable[[int, int], None]] = None):
        self.progress: List[Tuple[int, int]] = []
        self.logs: List[Tuple[str, int]] = []
        self._hook = on_progress_hook

    def on_progress(self, done: int, total: int) -> None:
        self.progress.append((done, total))
        if self._hook:
            self._hook(done, total)

    def on_log(self, message: str, severity: int) -> None:
        self.logs.append((message, severity))

    def warnings(self) -> List[str]:
        return [m for m, sev in self.logs if sev >= logging.WARNING]
