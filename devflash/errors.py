"""Exception hierarchy for the flashing engine.

Every failure raised by devflash derives from :class:`FlashError` and can
carry the last command code sent and the identified chip, so that a log line
or CLI error message says *what* the engine was doing when it failed.
"""

from __future__ import annotations

from typing import Optional


class FlashError(Exception):
    """Base class for all devflash failures."""

    def __init__(self, message: str = "", *, command: Optional[object] = None, chip: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.command = command
        self.chip = chip

    def with_context(self, *, command: Optional[object] = None, chip: Optional[str] = None) -> "FlashError":
        """Fill in missing context fields and return self (for re-raise)."""
        if self.command is None and command is not None:
            self.command = command
        if self.chip is None and chip is not None:
            self.chip = chip
        return self

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if isinstance(self.command, int):
            parts.append(f"command=0x{self.command:X}")
        elif self.command is not None:
            parts.append(f"command={self.command}")
        if self.chip:
            parts.append(f"chip={self.chip}")
        if len(parts) == 1:
            return parts[0]
        return f"{parts[0]} ({', '.join(parts[1:])})"


# --- Transport ---------------------------------------------------------------

class PortUnavailable(FlashError):
    """Raised when a port cannot be opened or is held by another session."""


class TransportTimeout(FlashError):
    """Raised when a read does not complete within its timeout."""


class TransportIOError(FlashError):
    """Raised when the underlying port reports an I/O failure."""


class DeviceDisconnected(TransportIOError):
    """Raised when I/O fails after the session had already talked to the device."""


class SessionClosed(FlashError):
    """Raised when an operation is attempted on a closed or invalidated session."""


# --- Codec -------------------------------------------------------------------

class FrameError(FlashError):
    """Base class for frame decoding failures."""


class FrameCorruption(FrameError):
    """Raised when a frame is structurally invalid."""


class ChecksumMismatch(FrameError):
    """Raised when a frame's checksum does not match its body."""


class IncompleteFrame(FrameError):
    """Raised when a buffer ends before the frame does."""


# --- Handshake ---------------------------------------------------------------

class HandshakeExhausted(FlashError):
    """Raised when every protocol variant failed for the configured number of cycles."""


class Desynchronized(FlashError):
    """Raised when host and device disagree on link parameters (e.g. baud rate)."""


# --- Agent -------------------------------------------------------------------

class SignatureRequired(FlashError):
    """Raised when the device rejects unsigned agents and nothing can get past that."""


class ExploitFailed(FlashError):
    """Raised when an exploit payload was not acknowledged with the expected code."""

    def __init__(self, message: str = "", *, ack: Optional[int] = None, expected: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.ack = ack
        self.expected = expected


class HandoffTimeout(TransportTimeout):
    """Raised when an uploaded agent never reports readiness."""


# --- Auth --------------------------------------------------------------------

class AuthRejected(FlashError):
    """Raised when the device refuses supplied authentication material."""


class NotAuthorized(FlashError):
    """Raised when an operation needs privileges the session does not hold."""


# --- Storage -----------------------------------------------------------------

class SizeMismatch(FlashError):
    """Raised when a source image does not fit the target partition."""


class CatalogCorrupt(FlashError):
    """Raised when a partition table fails validation."""


class PartitionNotFound(FlashError):
    """Raised when a partition name is not in the catalog."""


class DeviceError(FlashError):
    """Raised when the device answers a command with a failure status."""

    def __init__(self, message: str = "", *, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} [status=0x{self.status & 0xFFFFFFFF:X}]"
