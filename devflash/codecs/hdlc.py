"""HDLC-style byte-stuffed framing.

    0x7E | stuffed( command:2B BE | length:2B BE | payload | checksum:2B BE ) | 0x7E

0x7E and 0x7D inside the body are sent as 0x7D followed by the byte XOR 0x20.
The boot ROM checks CRC-16/XMODEM; download agents use the 16-bit sum.
"""

from __future__ import annotations

import struct
from enum import Enum
from typing import Optional, Tuple

from ..checksums import crc16_xmodem, sum16
from ..errors import ChecksumMismatch, FrameCorruption, IncompleteFrame
from .base import FrameCodec, ProtocolVariant

FLAG = 0x7E
ESCAPE = 0x7D
ESCAPE_MASK = 0x20
BODY_HEADER = ">HH"
MAX_PAYLOAD = 0xFFFF

# Commands
CONNECT = 0x00
START_DATA = 0x01
MIDST_DATA = 0x02
END_DATA = 0x03
EXEC_DATA = 0x04
RESET = 0x05
CHANGE_BAUD = 0x09
ERASE_FLASH = 0x0A
REPARTITION = 0x0B
READ_START = 0x10
READ_MIDST = 0x11
READ_END = 0x12
KEEP_CHARGE = 0x13
READ_CHIP_UID = 0x1A
READ_PARTITION = 0x2D
SEND_SIGNATURE = 0x32
CHECK_BAUD = 0x7E

# Replies
REP_ACK = 0x80
REP_VER = 0x81
REP_INVALID_CMD = 0x82
REP_OPERATION_FAILED = 0x84
REP_VERIFY_ERROR = 0x8B
REP_READ_FLASH = 0x93
REP_SIGN_VERIFY_ERROR = 0xA6
REP_READ_CHIP_UID = 0xAB
REP_PARTITION = 0xBA
REP_UNSUPPORTED = 0xFE
REP_LOG = 0xFF


class ChecksumMode(Enum):
    CRC16 = "crc16"
    SUM = "sum"


def stuff(body: bytes) -> bytes:
    out = bytearray()
    for b in body:
        if b == FLAG or b == ESCAPE:
            out.append(ESCAPE)
            out.append(b ^ ESCAPE_MASK)
        else:
            out.append(b)
    return bytes(out)


def unstuff(data: bytes) -> bytes:
    out = bytearray()
    escape = False
    for b in data:
        if escape:
            out.append(b ^ ESCAPE_MASK)
            escape = False
        elif b == ESCAPE:
            escape = True
        else:
            out.append(b)
    if escape:
        raise FrameCorruption("frame ends inside an escape sequence")
    return bytes(out)


class HdlcFramedCodec(FrameCodec):
    variant = ProtocolVariant.HDLC_FRAMED
    # Worst case every body byte is escaped.
    max_frame_size = 2 + 2 * (4 + MAX_PAYLOAD + 2)

    def __init__(self, checksum_mode: ChecksumMode = ChecksumMode.CRC16):
        self.checksum_mode = checksum_mode

    def _checksum(self, body: bytes) -> int:
        if self.checksum_mode == ChecksumMode.CRC16:
            return crc16_xmodem(body)
        return sum16(body)

    def encode(self, command: int, payload: bytes = b"") -> bytes:
        payload = bytes(payload)
        if len(payload) > MAX_PAYLOAD:
            raise ValueError(f"payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}")
        body = struct.pack(BODY_HEADER, command, len(payload)) + payload
        body += struct.pack(">H", self._checksum(body))
        return bytes([FLAG]) + stuff(body) + bytes([FLAG])

    def encode_baud_switch(self, rate: int) -> bytes:
        return self.encode(CHANGE_BAUD, struct.pack(">I", rate))

    def decode(self, frame: bytes) -> Tuple[int, bytes]:
        frame = bytes(frame)
        if not frame or frame[0] != FLAG:
            raise FrameCorruption("frame does not start with 0x7E")
        if len(frame) < 2 or frame[-1] != FLAG:
            raise IncompleteFrame("frame has no closing 0x7E")
        body = unstuff(frame[1:-1])
        if len(body) < 6:
            raise FrameCorruption(f"frame body of {len(body)} bytes is too short")
        command, length = struct.unpack_from(BODY_HEADER, body)
        if len(body) != 4 + length + 2:
            raise FrameCorruption(
                f"declared length {length} does not match body of {len(body)} bytes", command=command,
            )
        (expected,) = struct.unpack_from(">H", body, 4 + length)
        actual = self._checksum(body[:4 + length])
        if expected != actual:
            raise ChecksumMismatch(f"checksum 0x{actual:04X} != 0x{expected:04X}", command=command)
        return command, body[4:4 + length]

    def split(self, buffer: bytearray) -> Optional[bytes]:
        while True:
            start = buffer.find(bytes([FLAG]))
            if start < 0:
                buffer.clear()
                return None
            if start:
                del buffer[:start]
            end = buffer.find(bytes([FLAG]), 1)
            if end < 0:
                if len(buffer) > self.max_frame_size:
                    raise FrameCorruption(f"no closing flag in {len(buffer)} bytes")
                return None
            if end == 1:
                # Back-to-back flags: the first closed an earlier frame.
                del buffer[:1]
                continue
            frame = bytes(buffer[:end + 1])
            del buffer[:end + 1]
            return frame
