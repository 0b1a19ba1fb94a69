"""
Interfaces for the devflash engine.

Abstract base classes that define contracts for the pluggable components
(transports, clocks, progress sinks). This enables dependency injection and
mock-based testing without a phone on the bench.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(Enum):
    """Session lifecycle states."""
    CLOSED = "closed"
    OPEN = "open"
    READY = "ready"
    INVALIDATED = "invalidated"


class HandshakeState(Enum):
    """Handshake negotiator states."""
    IDLE = "idle"
    PORT_OPENED = "port_opened"
    IDENTITY_SENT = "identity_sent"
    IDENTITY_ACK = "identity_ack"
    IDENTITY_TIMEOUT = "identity_timeout"
    VARIANT_SELECTED = "variant_selected"
    AGENT_REQUIRED = "agent_required"
    READY = "ready"


@dataclass
class PortInfo:
    """Information about a serial or USB port."""
    device: str
    description: str = ""
    hwid: str = ""
    vid: Optional[int] = None
    pid: Optional[int] = None


class TransportInterface(ABC):
    """
    Abstract interface for a byte transport to the device.

    Implementations:
    - SerialTransport: Wraps pyserial for USB-CDC / UART ports
    - UsbBulkTransport: Raw bulk endpoints through pyusb
    - MockTransport: For unit testing without hardware
    """

    @abstractmethod
    def open(self, port: str, timeout: float = 1.0) -> None:
        """Open the port. Raises PortUnavailable on failure."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the port. Safe to call more than once."""
        pass

    @abstractmethod
    def is_open(self) -> bool:
        """Check if the port is currently open."""
        pass

    @abstractmethod
    def read(self, size: int, timeout: float) -> bytes:
        """Read between 1 and size bytes.

        Raises TransportTimeout if nothing arrives within timeout and
        TransportIOError if the port fails.
        """
        pass

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write data. Returns bytes written, raises TransportIOError."""
        pass

    @property
    def supports_baud_rate(self) -> bool:
        """Whether set_baud_rate() has any meaning for this transport."""
        return False

    def set_baud_rate(self, rate: int) -> None:
        """Change the line rate. Only serial transports support this."""
        raise NotImplementedError(f"{type(self).__name__} has no baud rate")

    @property
    def port_info(self) -> Optional[PortInfo]:
        """Identification of the opened port, if the transport knows it."""
        return None


class ClockInterface(ABC):
    """
    Abstract interface for time operations.

    Enables deterministic testing of time-dependent logic.
    """

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from an arbitrary monotonic origin."""
        pass

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Sleep for specified duration."""
        pass


class ProgressSink(ABC):
    """
    Receives progress and log events from the engine.

    Callbacks run on the thread driving the session; they must return quickly.
    Severity uses the ``logging`` level numbers.
    """

    @abstractmethod
    def on_progress(self, done: int, total: int) -> None:
        pass

    @abstractmethod
    def on_log(self, message: str, severity: int) -> None:
        pass

