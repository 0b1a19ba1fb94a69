"""Tests for devflash/sparse.py: streaming sparse image expansion."""

from __future__ import annotations

import io
import struct

import pytest

from devflash.sparse import MAGIC, SparseImageReader, is_sparse

from fakes import expand_sparse, make_sparse

BLK = 4096

CHUNKS = [
    ("raw", bytes(range(256)) * 32),
    ("fill", b"\xde\xad\xbe\xef", 3),
    ("dont_care", 2),
    ("crc", 0x12345678),
    ("raw", b"\x55" * BLK * 2),
    ("fill", b"\x00\x00\x00\x00", 1),
]


def _collect(reader, block, **kwargs):
    out = {}
    for offset, data in reader.iter_blocks(block, **kwargs):
        out[offset] = bytes(data)
    return out


def _flatten(pieces, size):
    image = bytearray(size)
    for offset, data in pieces.items():
        image[offset:offset + len(data)] = data
    return bytes(image)


class TestDetection:
    def test_is_sparse_restores_position(self):
        stream = io.BytesIO(make_sparse(CHUNKS))
        assert is_sparse(stream)
        assert stream.tell() == 0

    def test_raw_image_not_sparse(self):
        stream = io.BytesIO(b"\x00" * 64)
        stream.seek(10)
        assert not is_sparse(stream)
        assert stream.tell() == 10

    def test_short_stream(self):
        assert not is_sparse(io.BytesIO(b"\x3a\xff"))


class TestHeader:
    def test_logical_size(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        assert reader.logical_size == (2 + 3 + 2 + 2 + 1) * BLK

    def test_bad_major_version(self):
        image = bytearray(make_sparse(CHUNKS))
        struct.pack_into("<H", image, 4, 2)
        with pytest.raises(ValueError, match="version"):
            SparseImageReader(io.BytesIO(bytes(image)))

    def test_block_size_must_be_word_multiple(self):
        image = struct.pack("<IHHHHIIII", MAGIC, 1, 0, 28, 12, 4098, 0, 0, 0)
        with pytest.raises(ValueError):
            SparseImageReader(io.BytesIO(image))


class TestExpansion:
    def test_matches_full_expansion(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        pieces = _collect(reader, 8192, fill_dont_care=True)
        expected = expand_sparse(CHUNKS)
        assert _flatten(pieces, len(expected)) == expected

    def test_dont_care_is_skipped_by_default(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        pieces = _collect(reader, BLK)
        hole = range(5 * BLK, 7 * BLK)
        assert not any(offset in hole for offset in pieces)

    def test_dont_care_filled_when_asked(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        pieces = _collect(reader, BLK, fill_dont_care=True)
        assert pieces[5 * BLK] == bytes(BLK)

    def test_pieces_never_exceed_block(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        assert all(len(d) <= 2 * BLK for _, d in reader.iter_blocks(2 * BLK, fill_dont_care=True))

    def test_block_rounded_down_to_sparse_block(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        assert all(len(d) <= BLK for _, d in reader.iter_blocks(BLK + 100))

    def test_block_smaller_than_sparse_block(self):
        reader = SparseImageReader(io.BytesIO(make_sparse(CHUNKS)))
        with pytest.raises(ValueError):
            list(reader.iter_blocks(512))

    def test_unknown_chunk_type(self):
        image = bytearray(make_sparse([("raw", b"\x01" * BLK)]))
        struct.pack_into("<H", image, 28, 0xCAFF)
        reader = SparseImageReader(io.BytesIO(bytes(image)))
        with pytest.raises(ValueError, match="chunk"):
            list(reader.iter_blocks(BLK))

    def test_truncated_raw_chunk(self):
        image = make_sparse([("raw", b"\x01" * BLK * 2)])[:-100]
        reader = SparseImageReader(io.BytesIO(image))
        with pytest.raises(ValueError):
            list(reader.iter_blocks(BLK))
