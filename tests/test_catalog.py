"""Tests for devflash/catalog.py: partition table parsing and validation."""

from __future__ import annotations

import struct
import threading
import zlib

import pytest

from devflash.catalog import PartitionCatalog, parse_gpt, parse_sprd_table, validate
from devflash.commands.base import PartitionTable
from devflash.config import EngineConfig
from devflash.errors import CatalogCorrupt, PartitionNotFound
from devflash.models import Partition

from fakes import MemoryCommandSet, build_gpt, sprd_table

PARTS = [("boot_a", 64, 127), ("system_a", 128, 1151), ("persist", 1152, 1215)]


def _recrc_header(image: bytearray, sector_size: int = 512) -> None:
    struct.pack_into("<I", image, sector_size + 16, 0)
    crc = zlib.crc32(bytes(image[sector_size:sector_size + 92])) & 0xFFFFFFFF
    struct.pack_into("<I", image, sector_size + 16, crc)


class TestParseGpt:
    def test_entries(self):
        parts = parse_gpt(build_gpt(PARTS), 512, lun=2)
        assert [p.name for p in parts] == ["boot_a", "system_a", "persist"]
        assert parts[1].start_sector == 128
        assert parts[1].sector_count == 1024
        assert all(p.lun == 2 for p in parts)

    def test_ufs_sector_size(self):
        parts = parse_gpt(build_gpt(PARTS, sector_size=4096), 4096)
        assert parts[0].size_bytes == 64 * 4096

    def test_bad_signature(self):
        image = bytearray(build_gpt(PARTS))
        image[512:520] = b"NOT PART"
        with pytest.raises(CatalogCorrupt, match="signature"):
            parse_gpt(bytes(image))

    def test_header_crc(self):
        image = bytearray(build_gpt(PARTS))
        image[512 + 40] ^= 0x01
        with pytest.raises(CatalogCorrupt, match="header crc32"):
            parse_gpt(bytes(image))

    def test_entry_crc(self):
        image = bytearray(build_gpt(PARTS))
        image[1024 + 60] ^= 0x01
        with pytest.raises(CatalogCorrupt, match="entry array crc32"):
            parse_gpt(bytes(image))

    def test_entries_beyond_buffer_rejected(self):
        image = bytearray(build_gpt(PARTS))
        # 1000 entries x 128 bytes no longer fit in the supplied buffer.
        struct.pack_into("<I", image, 512 + 80, 1000)
        _recrc_header(image)
        with pytest.raises(CatalogCorrupt, match="only"):
            parse_gpt(bytes(image))

    def test_entry_count_limit(self):
        image = bytearray(build_gpt(PARTS))
        struct.pack_into("<I", image, 512 + 80, 5000)
        _recrc_header(image)
        with pytest.raises(CatalogCorrupt, match="limit"):
            parse_gpt(bytes(image), max_entries=1024)

    def test_short_buffer(self):
        with pytest.raises(CatalogCorrupt):
            parse_gpt(b"\x00" * 600)


class TestParseSprd:
    def test_sequential_layout(self):
        parts = parse_sprd_table(sprd_table([("splloader", 1), ("boot", 4), ("l_fixnv1", 2)]))
        assert [(p.name, p.start_sector, p.sector_count) for p in parts] == [
            ("splloader", 0, 2048),
            ("boot", 2048, 8192),
            ("l_fixnv1", 10240, 4096),
        ]

    def test_ragged_table(self):
        with pytest.raises(CatalogCorrupt):
            parse_sprd_table(b"\x00" * 77)


class TestValidate:
    def test_sorted(self):
        out = validate([Partition("b", 0, 100, 10), Partition("a", 0, 0, 10)])
        assert [p.name for p in out] == ["a", "b"]

    def test_overlap(self):
        with pytest.raises(CatalogCorrupt, match="overlaps"):
            validate([Partition("a", 0, 0, 10), Partition("b", 0, 5, 10)])

    def test_same_extent_on_other_lun_is_fine(self):
        validate([Partition("a", 0, 0, 10), Partition("b", 1, 0, 10)])

    def test_duplicate_name(self):
        with pytest.raises(CatalogCorrupt, match="duplicate"):
            validate([Partition("a", 0, 0, 10), Partition("a", 0, 20, 10)])


class TestPartitionCatalog:
    def test_refresh_marks_protected(self, config):
        cs = MemoryCommandSet(config, tables={0: PartitionTable("gpt", build_gpt(PARTS), 512, 0)})
        catalog = PartitionCatalog(config)
        catalog.refresh(cs, [0])
        assert catalog.valid and catalog.source == "device"
        assert catalog.find("persist").protected
        assert not catalog.find("boot_a").protected

    def test_protected_patterns_are_globs(self):
        catalog = PartitionCatalog(EngineConfig(protected_partitions=("modemst*",)))
        catalog.load([Partition("modemst1", 0, 0, 8), Partition("boot", 0, 8, 8)])
        assert catalog.find("modemst1").protected
        assert not catalog.find("boot").protected

    def test_failed_refresh_keeps_old_table(self, config):
        catalog = PartitionCatalog(config)
        catalog.load([Partition("boot", 0, 0, 8)])
        bad = bytearray(build_gpt(PARTS))
        bad[1024] ^= 0xFF
        cs = MemoryCommandSet(config, tables={0: PartitionTable("gpt", bytes(bad), 512, 0)})
        with pytest.raises(CatalogCorrupt):
            catalog.refresh(cs, [0])
        assert [p.name for p in catalog] == ["boot"]

    def test_find_ambiguous_across_luns(self):
        catalog = PartitionCatalog()
        catalog.load([Partition("xbl_a", 1, 6, 8), Partition("xbl_a", 2, 6, 8)])
        with pytest.raises(PartitionNotFound, match="specify"):
            catalog.find("xbl_a")
        assert catalog.find("xbl_a", lun=2).lun == 2

    def test_find_missing(self):
        with pytest.raises(PartitionNotFound):
            PartitionCatalog().find("nothing")

    def test_invalidate(self):
        catalog = PartitionCatalog()
        catalog.load([Partition("boot", 0, 0, 8)])
        catalog.invalidate()
        assert not catalog.valid
        assert len(catalog) == 0

    def test_concurrent_readers_see_whole_tables(self):
        catalog = PartitionCatalog()
        small = [Partition("a", 0, 0, 8)]
        large = [Partition(f"p{i}", 0, i * 8, 8) for i in range(50)]
        catalog.load(small)
        seen = set()
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                seen.add(len(catalog.partitions()))

        t = threading.Thread(target=reader)
        t.start()
        for _ in range(200):
            catalog.load(large)
            catalog.load(small)
        stop.set()
        t.join()
        assert seen <= {1, 50}
