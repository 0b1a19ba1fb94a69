"""Frame-level link: a codec bound to a transport.

Handles receive-buffer reassembly, request/response retries and the raw
(unframed) data phases some protocols use for bulk transfers.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple

from .codecs.base import FrameCodec
from .errors import (
    ChecksumMismatch,
    DeviceDisconnected,
    FlashError,
    TransportIOError,
    TransportTimeout,
)
from .implementations import RealClock
from .interfaces import ClockInterface, ProgressSink, TransportInterface

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024

# (command, payload) -> log text when the frame is a device log line, else None
LogFilter = Callable[[Any, Any], Optional[str]]


class FrameLink:
    """
    Sends and receives frames over one transport.

    Checksum mismatches and single-frame timeouts are retried up to
    ``max_retries`` times before the error surfaces. I/O failures after the
    first successful frame become DeviceDisconnected.
    """

    def __init__(
        self,
        transport: TransportInterface,
        codec: FrameCodec,
        *,
        timeout: float = 1.0,
        max_retries: int = 3,
        clock: Optional[ClockInterface] = None,
        sink: Optional[ProgressSink] = None,
        log_filter: Optional[LogFilter] = None,
    ):
        self.transport = transport
        self.codec = codec
        self.timeout = timeout
        self.max_retries = max_retries
        self.clock = clock or RealClock()
        self.sink = sink
        self.log_filter = log_filter
        self.had_traffic = False
        self.last_command: Any = None
        self._rx = bytearray()

    # -- plumbing ---------------------------------------------------------

    def _io_failure(self, err: TransportIOError) -> FlashError:
        if self.had_traffic and not isinstance(err, DeviceDisconnected):
            return DeviceDisconnected(f"device went away: {err.message}", command=self.last_command)
        return err.with_context(command=self.last_command)

    def _read(self, size: int, timeout: float) -> bytes:
        try:
            return self.transport.read(size, timeout)
        except TransportIOError as e:
            raise self._io_failure(e) from e

    def write_raw(self, data: bytes) -> None:
        try:
            self.transport.write(data)
        except TransportIOError as e:
            raise self._io_failure(e) from e

    def replace_codec(self, codec: FrameCodec, log_filter: Optional[LogFilter] = None) -> None:
        """Switch framing (e.g. after an agent handoff); pending bytes are dropped."""
        self.codec = codec
        self.log_filter = log_filter
        self._rx.clear()

    def drain(self, timeout: float = 0.05) -> int:
        """Discard anything buffered or still arriving. Returns bytes dropped."""
        dropped = len(self._rx)
        self._rx.clear()
        while True:
            try:
                dropped += len(self._read(READ_CHUNK, timeout))
            except TransportTimeout:
                break
        if dropped:
            logger.debug("Drained %d stale bytes", dropped)
        return dropped

    # -- frames -----------------------------------------------------------

    def send(self, command: Any, payload: Any = b"") -> None:
        self.last_command = command
        self.write_raw(self.codec.encode(command, payload))

    def receive_frame(self, timeout: Optional[float] = None) -> bytes:
        timeout = self.timeout if timeout is None else timeout
        deadline = self.clock.monotonic() + timeout
        while True:
            frame = self.codec.split(self._rx)
            if frame is not None:
                return frame
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                raise TransportTimeout(f"no response within {timeout:.2f}s", command=self.last_command)
            try:
                self._rx.extend(self._read(READ_CHUNK, remaining))
            except TransportTimeout as e:
                raise e.with_context(command=self.last_command)

    def receive(self, timeout: Optional[float] = None) -> Tuple[Any, Any]:
        """Next decoded (command, payload), skipping device log frames."""
        while True:
            command, payload = self.codec.decode(self.receive_frame(timeout))
            self.had_traffic = True
            text = self.log_filter(command, payload) if self.log_filter else None
            if text is None:
                return command, payload
            logger.debug("device: %s", text)
            if self.sink:
                self.sink.on_log(text, logging.INFO)

    def transact(self, command: Any, payload: Any = b"", timeout: Optional[float] = None) -> Tuple[Any, Any]:
        """Send one request and return its response, retrying transient failures."""
        attempt = 0
        while True:
            self.send(command, payload)
            try:
                return self.receive(timeout)
            except (ChecksumMismatch, TransportTimeout) as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise e.with_context(command=command)
                logger.warning("Retrying %s after %s (%d/%d)", _fmt(command), type(e).__name__, attempt, self.max_retries)

    # -- raw data phases --------------------------------------------------

    def read_raw(self, size: int, timeout: Optional[float] = None) -> bytes:
        """Read exactly size unframed bytes, using buffered bytes first."""
        timeout = self.timeout if timeout is None else timeout
        out = bytearray(self._rx[:size])
        del self._rx[:len(out)]
        deadline = self.clock.monotonic() + timeout
        while len(out) < size:
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                raise TransportTimeout(
                    f"raw read stalled at {len(out)}/{size} bytes", command=self.last_command,
                )
            try:
                chunk = self._read(size - len(out), remaining)
            except TransportTimeout as e:
                raise e.with_context(command=self.last_command)
            out.extend(chunk)
        if len(out) > size:
            # USB bulk reads can overshoot; keep the surplus for the next frame.
            self._rx[:0] = out[size:]
            del out[size:]
        self.had_traffic = True
        return bytes(out)


def _fmt(command: Any) -> str:
    return f"0x{command:X}" if isinstance(command, int) else str(command)
