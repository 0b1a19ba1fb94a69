"""Length-prefixed binary framing.

Frame layout (little endian):
    magic:    4B  0xFEEEEEEF
    command:  4B  uint32
    length:   4B  uint32 (payload bytes)
    payload:  <length> bytes
    crc32:    4B  uint32 over the payload, only when checksums are enabled
"""

from __future__ import annotations

import logging
import struct
from typing import Optional, Tuple

from ..checksums import crc32
from ..errors import ChecksumMismatch, FrameCorruption, IncompleteFrame
from .base import FrameCodec, ProtocolVariant

logger = logging.getLogger(__name__)

MAGIC = 0xFEEEEEEF
MAGIC_BYTES = struct.pack("<I", MAGIC)
HEADER_FMT = "<III"
HEADER_SIZE = struct.calcsize(HEADER_FMT)
CRC_SIZE = 4
MAX_PAYLOAD = 0x200000


class BinaryFramedCodec(FrameCodec):
    variant = ProtocolVariant.BINARY_FRAMED

    def __init__(self, checksum: bool = False, max_payload: int = MAX_PAYLOAD):
        self.checksum = checksum
        self.max_payload = max_payload

    @property
    def max_frame_size(self) -> int:
        return HEADER_SIZE + self.max_payload + CRC_SIZE

    def _trailer(self) -> int:
        return CRC_SIZE if self.checksum else 0

    def encode(self, command: int, payload: bytes = b"") -> bytes:
        payload = bytes(payload)
        if len(payload) > self.max_payload:
            raise ValueError(f"payload of {len(payload)} bytes exceeds {self.max_payload}")
        frame = struct.pack(HEADER_FMT, MAGIC, command, len(payload)) + payload
        if self.checksum:
            frame += struct.pack("<I", crc32(payload))
        return frame

    def decode(self, frame: bytes) -> Tuple[int, bytes]:
        if len(frame) < HEADER_SIZE:
            raise IncompleteFrame(f"need {HEADER_SIZE} header bytes, have {len(frame)}")
        magic, command, length = struct.unpack_from(HEADER_FMT, frame)
        if magic != MAGIC:
            raise FrameCorruption(f"bad magic 0x{magic:08X}")
        if length > self.max_payload:
            raise FrameCorruption(f"declared length {length} exceeds {self.max_payload}", command=command)
        end = HEADER_SIZE + length
        if len(frame) < end + self._trailer():
            raise IncompleteFrame(f"frame truncated at {len(frame)} of {end + self._trailer()} bytes", command=command)
        payload = bytes(frame[HEADER_SIZE:end])
        if self.checksum:
            (expected,) = struct.unpack_from("<I", frame, end)
            actual = crc32(payload)
            if expected != actual:
                raise ChecksumMismatch(
                    f"crc32 0x{actual:08X} != 0x{expected:08X}", command=command,
                )
        return command, payload

    def split(self, buffer: bytearray) -> Optional[bytes]:
        while True:
            start = buffer.find(MAGIC_BYTES)
            if start < 0:
                # Keep a possible partial magic at the tail.
                keep = len(MAGIC_BYTES) - 1
                if len(buffer) > keep:
                    del buffer[:-keep]
                return None
            if start:
                logger.debug("Dropping %d bytes before frame magic", start)
                del buffer[:start]
            if len(buffer) < HEADER_SIZE:
                return None
            _, _, length = struct.unpack_from(HEADER_FMT, buffer)
            if length > self.max_payload:
                # Not a real header; resync after this magic.
                del buffer[:len(MAGIC_BYTES)]
                continue
            total = HEADER_SIZE + length + self._trailer()
            if len(buffer) < total:
                return None
            frame = bytes(buffer[:total])
            del buffer[:total]
            return frame
