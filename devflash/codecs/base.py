"""Codec contract shared by every protocol variant."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional, Tuple


class ProtocolVariant(Enum):
    """Wire protocol families the negotiator can select."""
    BINARY_FRAMED = "binary"
    XML_COMMAND = "xml"
    HDLC_FRAMED = "hdlc"


class FrameCodec(ABC):
    """
    Turns (command, payload) pairs into frames and back.

    ``decode`` raises ChecksumMismatch, FrameCorruption or IncompleteFrame.
    ``split`` pulls the next complete frame out of a receive buffer, dropping
    any garbage in front of it, and returns None when more bytes are needed.
    """

    variant: ProtocolVariant
    max_frame_size: int

    @abstractmethod
    def encode(self, command: Any, payload: Any = b"") -> bytes:
        pass

    @abstractmethod
    def decode(self, frame: bytes) -> Tuple[Any, Any]:
        pass

    @abstractmethod
    def split(self, buffer: bytearray) -> Optional[bytes]:
        pass
