"""Checksums used by the wire protocols."""

from __future__ import annotations

import zlib


def crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def _make_crc16_table(poly: int = 0x1021) -> list:
    table = []
    for i in range(256):
        crc = i << 8
        for _ in range(8):
            crc = ((crc << 1) ^ poly) if crc & 0x8000 else (crc << 1)
        table.append(crc & 0xFFFF)
    return table


_CRC16_TABLE = _make_crc16_table()


def crc16_xmodem(data: bytes, crc: int = 0) -> int:
    """CRC-16/XMODEM (poly 0x1021, init 0, no reflection)."""
    for b in data:
        crc = ((crc << 8) & 0xFFFF) ^ _CRC16_TABLE[((crc >> 8) ^ b) & 0xFF]
    return crc


def sum16(data: bytes) -> int:
    """One's-complement 16-bit sum over little-endian words, byte swapped.

    Used by Spreadtrum download agents once they take over from the boot ROM.
    """
    total = 0
    n = len(data)
    for i in range(0, n - 1, 2):
        total += data[i] | (data[i + 1] << 8)
    if n & 1:
        total += data[-1]
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    total = ~total & 0xFFFF
    return ((total >> 8) | (total << 8)) & 0xFFFF
