"""Android sparse image reader.

File format (little endian):
    Header (28 bytes):
        magic:          4B  0xED26FF3A
        major_version:  2B  (1)
        minor_version:  2B
        file_hdr_sz:    2B  (28)
        chunk_hdr_sz:   2B  (12)
        blk_sz:         4B  block size in bytes, multiple of 4
        total_blks:     4B  blocks in the expanded image
        total_chunks:   4B
        image_checksum: 4B

    Chunk (repeated):
        chunk_type:     2B  RAW 0xCAC1 | FILL 0xCAC2 | DONT_CARE 0xCAC3 | CRC32 0xCAC4
        reserved:       2B
        chunk_sz:       4B  blocks covered in the expanded image
        total_sz:       4B  bytes of this chunk in the file, header included
        data:           RAW: chunk_sz * blk_sz bytes, FILL: 4-byte pattern, CRC32: 4 bytes

Expansion is streamed: at most one block buffer of ``max_bytes`` exists at a
time regardless of the logical image size.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

MAGIC = 0xED26FF3A
HEADER_FMT = "<IHHHHIIII"
HEADER_SIZE = struct.calcsize(HEADER_FMT)  # 28
CHUNK_HEADER_FMT = "<HHII"
CHUNK_HEADER_SIZE = struct.calcsize(CHUNK_HEADER_FMT)  # 12

CHUNK_RAW = 0xCAC1
CHUNK_FILL = 0xCAC2
CHUNK_DONT_CARE = 0xCAC3
CHUNK_CRC32 = 0xCAC4


def is_sparse(stream: BinaryIO) -> bool:
    """Check for the sparse magic without moving the stream position."""
    pos = stream.tell()
    head = stream.read(4)
    stream.seek(pos)
    return len(head) == 4 and struct.unpack("<I", head)[0] == MAGIC


@dataclass
class SparseHeader:
    major: int
    minor: int
    file_hdr_sz: int
    chunk_hdr_sz: int
    blk_sz: int
    total_blks: int
    total_chunks: int
    checksum: int


class SparseImageReader:
    """Streams the expanded contents of a sparse image."""

    def __init__(self, stream: BinaryIO):
        self._f = stream
        raw = stream.read(HEADER_SIZE)
        if len(raw) < HEADER_SIZE:
            raise ValueError("Truncated sparse header")
        magic, *fields = struct.unpack(HEADER_FMT, raw)
        if magic != MAGIC:
            raise ValueError(f"Not a sparse image (magic {magic:#010x})")
        self.header = SparseHeader(*fields)
        h = self.header
        if h.major != 1:
            raise ValueError(f"Unsupported sparse major version {h.major}")
        if h.file_hdr_sz < HEADER_SIZE or h.chunk_hdr_sz < CHUNK_HEADER_SIZE:
            raise ValueError("Sparse header sizes are too small")
        if h.blk_sz == 0 or h.blk_sz % 4:
            raise ValueError(f"Sparse block size {h.blk_sz} is not a multiple of 4")
        if h.file_hdr_sz > HEADER_SIZE:
            stream.read(h.file_hdr_sz - HEADER_SIZE)

    @property
    def logical_size(self) -> int:
        return self.header.blk_sz * self.header.total_blks

    def iter_blocks(self, max_bytes: int, fill_dont_care: bool = False) -> Iterator[Tuple[int, bytes]]:
        """Yield (byte_offset, data) pieces of the expanded image, each <= max_bytes.

        DONT_CARE regions are skipped unless fill_dont_care, in which case they
        come back as zeros (for sequential-only targets).
        """
        h = self.header
        max_bytes -= max_bytes % h.blk_sz
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must hold at least one {h.blk_sz}-byte block")
        zeros: Optional[bytes] = None
        block = 0
        for index in range(h.total_chunks):
            raw = self._f.read(h.chunk_hdr_sz)
            if len(raw) < h.chunk_hdr_sz:
                raise ValueError(f"Truncated sparse chunk header at chunk {index}")
            ctype, _, chunk_blocks, total_sz = struct.unpack_from(CHUNK_HEADER_FMT, raw)
            data_sz = total_sz - h.chunk_hdr_sz
            if block + chunk_blocks > h.total_blks:
                raise ValueError(f"Chunk {index} runs past the declared {h.total_blks} blocks")
            offset = block * h.blk_sz
            length = chunk_blocks * h.blk_sz

            if ctype == CHUNK_RAW:
                if data_sz != length:
                    raise ValueError(f"RAW chunk {index} carries {data_sz} bytes, expected {length}")
                done = 0
                while done < length:
                    n = min(max_bytes, length - done)
                    piece = self._f.read(n)
                    if len(piece) != n:
                        raise ValueError(f"Truncated RAW chunk {index}")
                    yield offset + done, piece
                    done += n
            elif ctype == CHUNK_FILL:
                if data_sz != 4:
                    raise ValueError(f"FILL chunk {index} has {data_sz} data bytes")
                pattern = self._f.read(4)
                if pattern == b"\x00\x00\x00\x00":
                    zeros = zeros or bytes(max_bytes)
                    filled = zeros
                else:
                    filled = pattern * (max_bytes // 4)
                yield from _repeat(filled, offset, length)
            elif ctype == CHUNK_DONT_CARE:
                if data_sz:
                    raise ValueError(f"DONT_CARE chunk {index} has data")
                if fill_dont_care:
                    zeros = zeros or bytes(max_bytes)
                    yield from _repeat(zeros, offset, length)
            elif ctype == CHUNK_CRC32:
                self._f.read(data_sz)
                chunk_blocks = 0
            else:
                raise ValueError(f"Unknown sparse chunk type {ctype:#06x} at chunk {index}")
            block += chunk_blocks
        if block != h.total_blks:
            logger.warning("Sparse image covers %d of %d declared blocks", block, h.total_blks)


def _repeat(buf: bytes, offset: int, length: int) -> Iterator[Tuple[int, bytes]]:
    done = 0
    while done < length:
        n = min(len(buf), length - done)
        yield offset + done, buf if n == len(buf) else buf[:n]
        done += n
