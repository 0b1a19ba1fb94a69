"""
Real implementations of interfaces for production use.

These classes wrap actual system resources (serial ports, USB endpoints,
the system clock) and implement the abstract interfaces.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional

import serial
import serial.tools.list_ports

from .errors import PortUnavailable, TransportIOError, TransportTimeout
from .interfaces import ClockInterface, PortInfo, ProgressSink, TransportInterface

logger = logging.getLogger(__name__)

USB_PREFIX = "usb:"


class RealClock(ClockInterface):
    """
    Real clock implementation using system time.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class SerialTransport(TransportInterface):
    """
    Serial transport using pyserial (USB-CDC and UART download ports).
    """

    def __init__(self, baud: int = 115200, flush_delay: float = 0.1, clock: Optional[ClockInterface] = None):
        self._serial: Optional[serial.Serial] = None
        self._baud = baud
        self._flush_delay = flush_delay
        self._clock = clock or RealClock()
        self._info: Optional[PortInfo] = None

    def open(self, port: str, timeout: float = 1.0) -> None:
        try:
            self._serial = serial.Serial(port, self._baud, timeout=timeout, write_timeout=timeout)
        except (serial.SerialException, OSError) as e:
            self._serial = None
            raise PortUnavailable(f"cannot open {port}: {e}") from e
        self._info = _lookup_port(port)
        logger.debug("Opened %s at %d baud", port, self._baud)

    def close(self) -> None:
        if self._serial:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                logger.debug("Error closing port: %s", e)
            self._serial = None

    def is_open(self) -> bool:
        if self._serial is None:
            return False
        return bool(self._serial.is_open)

    def _require(self) -> serial.Serial:
        if self._serial is None:
            raise TransportIOError("port is not open")
        return self._serial

    def read(self, size: int, timeout: float) -> bytes:
        port = self._require()
        try:
            port.timeout = max(timeout, 0.0)
            first = port.read(1)
            if not first:
                raise TransportTimeout(f"no data within {timeout:.2f}s")
            waiting = port.in_waiting
            if waiting and size > 1:
                return first + port.read(min(waiting, size - 1))
            return first
        except (serial.SerialException, OSError) as e:
            raise TransportIOError(f"read failed: {e}") from e

    def write(self, data: bytes) -> int:
        port = self._require()
        try:
            written = port.write(data)
            port.flush()
        except serial.SerialTimeoutException as e:
            raise TransportIOError(f"write timed out: {e}") from e
        except (serial.SerialException, OSError) as e:
            raise TransportIOError(f"write failed: {e}") from e
        return written or 0

    @property
    def supports_baud_rate(self) -> bool:
        return True

    def set_baud_rate(self, rate: int) -> None:
        port = self._require()
        try:
            port.baudrate = rate
        except (serial.SerialException, ValueError, OSError) as e:
            raise TransportIOError(f"cannot switch to {rate} baud: {e}") from e
        self._baud = rate
        self._clock.sleep(self._flush_delay)
        port.reset_input_buffer()
        logger.debug("Line rate now %d", rate)

    @property
    def baud_rate(self) -> int:
        return self._baud

    @property
    def port_info(self) -> Optional[PortInfo]:
        return self._info

    @staticmethod
    def list_ports() -> List[PortInfo]:
        ports = []
        for p in serial.tools.list_ports.comports():
            ports.append(PortInfo(
                device=p.device,
                description=p.description or "",
                hwid=p.hwid or "",
                vid=p.vid,
                pid=p.pid,
            ))
        return ports


def _lookup_port(device: str) -> Optional[PortInfo]:
    for info in SerialTransport.list_ports():
        if info.device == device:
            return info
    return None


def parse_usb_port(port: str) -> tuple:
    """``usb:0E8D:2000`` -> (0x0E8D, 0x2000)."""
    try:
        _, vid, pid = port.split(":")
        return int(vid, 16), int(pid, 16)
    except ValueError:
        raise PortUnavailable(f"USB port must look like usb:VID:PID, got {port!r}")


class UsbBulkTransport(TransportInterface):
    """
    Raw USB bulk transport using pyusb (libusb).

    Used for devices that do not enumerate as a CDC serial port.
    """

    def __init__(self, interface: int = 0):
        self._interface = interface
        self._dev = None
        self._ep_in = None
        self._ep_out = None
        self._info: Optional[PortInfo] = None

    def open(self, port: str, timeout: float = 1.0) -> None:
        try:
            import usb.core
            import usb.util
        except ImportError:
            raise PortUnavailable("pyusb not installed (pip install devflash[usb])")

        vid, pid = parse_usb_port(port)
        dev = usb.core.find(idVendor=vid, idProduct=pid)
        if dev is None:
            raise PortUnavailable(f"USB device {vid:04x}:{pid:04x} not found")
        try:
            if dev.is_kernel_driver_active(self._interface):
                dev.detach_kernel_driver(self._interface)
        except (NotImplementedError, usb.core.USBError) as e:
            logger.debug("Kernel driver check skipped: %s", e)
        try:
            dev.set_configuration()
            cfg = dev.get_active_configuration()
            intf = cfg[(self._interface, 0)]
        except usb.core.USBError as e:
            raise PortUnavailable(f"cannot configure {port}: {e}") from e

        def direction(wanted):
            return lambda ep: usb.util.endpoint_direction(ep.bEndpointAddress) == wanted

        self._ep_out = usb.util.find_descriptor(intf, custom_match=direction(usb.util.ENDPOINT_OUT))
        self._ep_in = usb.util.find_descriptor(intf, custom_match=direction(usb.util.ENDPOINT_IN))
        if self._ep_out is None or self._ep_in is None:
            raise PortUnavailable(f"{port} has no bulk endpoint pair on interface {self._interface}")
        self._dev = dev
        self._info = PortInfo(device=port, description="usb bulk", hwid=f"USB VID:PID={vid:04X}:{pid:04X}",
                              vid=vid, pid=pid)

    def close(self) -> None:
        if self._dev is None:
            return
        import usb.core
        import usb.util
        try:
            usb.util.dispose_resources(self._dev)
        except usb.core.USBError as e:
            logger.debug("Error releasing USB device: %s", e)
        self._dev = None

    def is_open(self) -> bool:
        return self._dev is not None

    def read(self, size: int, timeout: float) -> bytes:
        import usb.core
        if self._dev is None:
            raise TransportIOError("port is not open")
        try:
            data = self._ep_in.read(max(size, self._ep_in.wMaxPacketSize), timeout=max(int(timeout * 1000), 1))
        except usb.core.USBTimeoutError:
            raise TransportTimeout(f"no data within {timeout:.2f}s")
        except usb.core.USBError as e:
            raise TransportIOError(f"bulk read failed: {e}") from e
        if not data:
            raise TransportTimeout("zero-length packet")
        return bytes(data)

    def write(self, data: bytes) -> int:
        import usb.core
        if self._dev is None:
            raise TransportIOError("port is not open")
        try:
            return self._ep_out.write(data)
        except usb.core.USBError as e:
            raise TransportIOError(f"bulk write failed: {e}") from e

    @property
    def port_info(self) -> Optional[PortInfo]:
        return self._info


def open_transport(port: str, *, baud: int = 115200, flush_delay: float = 0.1) -> TransportInterface:
    """Pick a transport implementation for a port string (not yet opened)."""
    if port.startswith(USB_PREFIX):
        return UsbBulkTransport()
    return SerialTransport(baud=baud, flush_delay=flush_delay)


class LoggingSink(ProgressSink):
    """Forwards engine events to the ``logging`` module."""

    def __init__(self, name: str = "devflash.progress"):
        self._logger = logging.getLogger(name)
        self._last_pct = -1

    def on_progress(self, done: int, total: int) -> None:
        pct = int(done * 100 / total) if total else 100
        if pct != self._last_pct and pct % 10 == 0:
            self._logger.info("progress %d%% (%d/%d bytes)", pct, done, total)
        self._last_pct = pct

    def on_log(self, message: str, severity: int) -> None:
        self._logger.log(severity, "%s", message)
