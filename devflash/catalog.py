"""Partition catalog: parsing and maintaining the device partition table.

Two serialized table formats are understood:

GPT (header at LBA 1, little endian):
    signature:      8B  "EFI PART"
    header_size:    4B  @12
    header_crc32:   4B  @16 (computed with this field zeroed)
    entries_lba:    8B  @72
    entry_count:    4B  @80
    entry_size:     4B  @84
    entries_crc32:  4B  @88
  entry (entry_size bytes, usually 128):
    type_guid 16B | unique_guid 16B | first_lba 8B | last_lba 8B | attrs 8B | name 72B UTF-16LE

Spreadtrum table (agent READ_PARTITION reply):
    entry (76 bytes): name 72B UTF-16LE | size 4B uint32 LE in MiB
"""

from __future__ import annotations

import fnmatch
import logging
import struct
import threading
import zlib
from typing import Iterable, Iterator, List, Optional, Sequence

from .config import EngineConfig
from .errors import CatalogCorrupt, PartitionNotFound
from .models import Partition

logger = logging.getLogger(__name__)

GPT_SIGNATURE = b"EFI PART"
GPT_HEADER_FMT = "<8sIIIIQQQQ16sQIII"
GPT_HEADER_MIN = struct.calcsize(GPT_HEADER_FMT)  # 92
GPT_ENTRY_MIN = 128
GPT_NAME_OFFSET = 56
GPT_NAME_SIZE = 72

SPRD_ENTRY_FMT = "<72sI"
SPRD_ENTRY_SIZE = struct.calcsize(SPRD_ENTRY_FMT)  # 76
SPRD_SIZE_UNIT = 1024 * 1024


def _decode_name(raw: bytes) -> str:
    return raw.decode("utf-16-le", "replace").split("\x00", 1)[0]


def parse_gpt(data: bytes, sector_size: int = 512, lun: int = 0, max_entries: int = 1024) -> List[Partition]:
    """Parse a GPT image (LBA 0 onwards). Raises CatalogCorrupt on any inconsistency."""
    hdr_off = sector_size
    if len(data) < hdr_off + GPT_HEADER_MIN:
        raise CatalogCorrupt(f"buffer of {len(data)} bytes has no GPT header at LBA1")
    (signature, _revision, header_size, header_crc, _reserved, _current, _backup,
     _first_usable, _last_usable, _disk_guid, entries_lba, count, entry_size,
     entries_crc) = struct.unpack_from(GPT_HEADER_FMT, data, hdr_off)
    if signature != GPT_SIGNATURE:
        raise CatalogCorrupt(f"bad GPT signature {signature!r}")
    if header_size < GPT_HEADER_MIN or header_size > sector_size:
        raise CatalogCorrupt(f"GPT header size {header_size} out of range")
    header = bytearray(data[hdr_off:hdr_off + header_size])
    header[16:20] = b"\x00\x00\x00\x00"
    if zlib.crc32(bytes(header)) & 0xFFFFFFFF != header_crc:
        raise CatalogCorrupt("GPT header crc32 mismatch")
    if count > max_entries:
        raise CatalogCorrupt(f"GPT declares {count} entries, limit is {max_entries}")
    if entry_size < GPT_ENTRY_MIN or entry_size % 8:
        raise CatalogCorrupt(f"GPT entry size {entry_size} is invalid")

    start = entries_lba * sector_size
    end = start + count * entry_size
    if end > len(data):
        raise CatalogCorrupt(
            f"GPT entries span bytes {start}..{end} but only {len(data)} were supplied"
        )
    entries = data[start:end]
    if zlib.crc32(entries) & 0xFFFFFFFF != entries_crc:
        raise CatalogCorrupt("GPT entry array crc32 mismatch")

    partitions = []
    for i in range(count):
        off = i * entry_size
        if entries[off:off + 16] == b"\x00" * 16:
            continue
        first, last = struct.unpack_from("<QQ", entries, off + 32)
        if last < first:
            raise CatalogCorrupt(f"GPT entry {i} ends before it starts ({first}..{last})")
        name = _decode_name(entries[off + GPT_NAME_OFFSET:off + GPT_NAME_OFFSET + GPT_NAME_SIZE])
        partitions.append(Partition(
            name=name or f"part{i}",
            lun=lun,
            start_sector=first,
            sector_count=last - first + 1,
            sector_size=sector_size,
        ))
    return partitions


def parse_sprd_table(data: bytes, lun: int = 0, sector_size: int = 512) -> List[Partition]:
    """Parse the fixed-entry Spreadtrum table; start sectors are assigned in order."""
    if len(data) % SPRD_ENTRY_SIZE:
        raise CatalogCorrupt(f"table of {len(data)} bytes is not a multiple of {SPRD_ENTRY_SIZE}")
    partitions = []
    next_sector = 0
    for raw_name, size_mib in struct.iter_unpack(SPRD_ENTRY_FMT, data):
        name = _decode_name(raw_name)
        if not name:
            continue
        count = size_mib * SPRD_SIZE_UNIT // sector_size
        partitions.append(Partition(name, lun, next_sector, count, sector_size))
        next_sector += count
    return partitions


def validate(partitions: Sequence[Partition]) -> List[Partition]:
    """Sort by (lun, start) and enforce uniqueness and non-overlap."""
    seen = set()
    for p in partitions:
        key = (p.lun, p.name)
        if key in seen:
            raise CatalogCorrupt(f"duplicate partition {p.name!r} on LUN {p.lun}")
        seen.add(key)
        if p.sector_count < 0 or p.start_sector < 0:
            raise CatalogCorrupt(f"partition {p.name!r} has a negative extent")
    ordered = sorted(partitions, key=lambda p: (p.lun, p.start_sector))
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.lun == cur.lun and cur.start_sector < prev.end_sector:
            raise CatalogCorrupt(
                f"partition {cur.name!r} (LUN {cur.lun}, sector {cur.start_sector}) "
                f"overlaps {prev.name!r} ending at {prev.end_sector}"
            )
    return ordered


class PartitionCatalog:
    """
    The session's view of the partition layout.

    Replacement is atomic: a new table is parsed and validated completely
    before it becomes visible, and readers always see either the old or the
    new table.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self._lock = threading.Lock()
        self._partitions: tuple = ()
        self.source: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.source is not None

    def is_protected(self, name: str) -> bool:
        lowered = name.lower()
        return any(fnmatch.fnmatchcase(lowered, pat.lower()) for pat in self.config.protected_partitions)

    def load(self, partitions: Iterable[Partition], source: str = "device") -> None:
        ordered = validate(list(partitions))
        for p in ordered:
            if self.is_protected(p.name):
                p.protected = True
        with self._lock:
            self._partitions = tuple(ordered)
            self.source = source
        logger.info("Catalog loaded from %s: %d partitions on LUN(s) %s",
                    source, len(ordered), ",".join(str(lun) for lun in self.luns()) or "-")

    def refresh(self, command_set, luns: Optional[Iterable[int]] = None) -> None:
        """Query the device for each LUN and replace the catalog."""
        found: List[Partition] = []
        for lun in (luns if luns is not None else self.config.luns):
            table = command_set.read_partition_table(lun)
            if table.format == "sprd":
                found.extend(parse_sprd_table(table.data, table.lun, table.sector_size))
            else:
                found.extend(parse_gpt(table.data, table.sector_size, table.lun, self.config.max_gpt_entries))
        self.load(found, "device")

    def import_firmware(self, entries: Iterable) -> None:
        """Adopt the layout from a firmware image reader's entries."""
        self.load(
            (Partition(e.name, e.lun, e.start_sector, e.sector_count, e.sector_size, e.sparse)
             for e in entries),
            "firmware",
        )

    def invalidate(self) -> None:
        with self._lock:
            self._partitions = ()
            self.source = None

    def partitions(self, lun: Optional[int] = None) -> List[Partition]:
        current = self._partitions
        return [p for p in current if lun is None or p.lun == lun]

    def luns(self) -> List[int]:
        return sorted({p.lun for p in self._partitions})

    def find(self, name: str, lun: Optional[int] = None) -> Partition:
        matches = [p for p in self._partitions if p.name == name and (lun is None or p.lun == lun)]
        if not matches:
            where = f" on LUN {lun}" if lun is not None else ""
            raise PartitionNotFound(f"no partition named {name!r}{where}")
        if len(matches) > 1:
            raise PartitionNotFound(
                f"{name!r} exists on LUNs {[p.lun for p in matches]}; specify one"
            )
        return matches[0]

    def __len__(self) -> int:
        return len(self._partitions)

    def __iter__(self) -> Iterator[Partition]:
        return iter(self._partitions)
