"""
Firmware image reader: partition layout and byte sources from a firmware
directory.

RawprogramReader understands the ``rawprogram*.xml`` / ``patch*.xml`` pairs
shipped with XML-command firmware::

    <data>
      <program SECTOR_SIZE_IN_BYTES="4096" filename="xbl.elf" label="xbl_a"
               num_partition_sectors="896" physical_partition_number="1"
               start_sector="6" sparse="false"/>
    </data>

    <patches>
      <patch SECTOR_SIZE_IN_BYTES="4096" byte_offset="168" filename="DISK"
             physical_partition_number="0" size_in_bytes="8" start_sector="1"
             value="NUM_DISK_SECTORS-5." what="Update last partition"/>
    </patches>

Sector fields written relative to the disk end (``NUM_DISK_SECTORS-N``)
resolve only when the LUN's sector count is known; otherwise the element is
skipped.
"""

from __future__ import annotations

import glob
import logging
import os
import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from .models import Operation, OperationKind, Partition, Patch
from .sparse import SparseImageReader, is_sparse

logger = logging.getLogger(__name__)

_DISK_RELATIVE = re.compile(r"^\s*NUM_DISK_SECTORS\s*-\s*(\d+)\.?\s*$")


@dataclass
class FirmwareEntry:
    name: str
    lun: int
    start_sector: int
    sector_count: int
    sector_size: int = 4096
    path: str = ""
    sparse: bool = False
    file_offset: int = 0

    @property
    def has_data(self) -> bool:
        return bool(self.path)

    def open(self) -> BinaryIO:
        f = open(self.path, "rb")
        if self.file_offset:
            f.seek(self.file_offset)
        return f

    def partition(self) -> Partition:
        return Partition(self.name, self.lun, self.start_sector, self.sector_count, self.sector_size, self.sparse)


class FirmwareImageReader(ABC):
    """
    Abstract firmware layout source.

    Implementations:
    - RawprogramReader: rawprogram*.xml + patch*.xml directories
    """

    @abstractmethod
    def entries(self) -> List[FirmwareEntry]:
        pass

    def patches(self) -> List[Patch]:
        return []

    def streams(self) -> Iterator[Tuple[str, int, int, BinaryIO]]:
        """Yield (partition name, LUN, start sector, byte stream) for entries with data."""
        for entry in self.entries():
            if entry.has_data:
                with entry.open() as stream:
                    yield entry.name, entry.lun, entry.start_sector, stream

    def operations(self, catalog=None) -> List[Operation]:
        """One write per entry with data; protection flags come from the catalog."""
        ops = []
        for entry in self.entries():
            if not entry.has_data:
                continue
            part = entry.partition()
            if catalog is not None:
                part.protected = catalog.is_protected(part.name)
            ops.append(Operation(OperationKind.WRITE, part, entry.path, source_offset=entry.file_offset))
        return ops


def _attr_int(elem: ET.Element, name: str, default: int = 0, disk_sectors: Optional[int] = None) -> Optional[int]:
    raw = elem.get(name)
    if raw is None or raw.strip() == "":
        return default
    m = _DISK_RELATIVE.match(raw)
    if m:
        return disk_sectors - int(m.group(1)) if disk_sectors else None
    return int(raw.strip().rstrip("."), 0)


class RawprogramReader(FirmwareImageReader):

    def __init__(self, directory: str, disk_sectors: Optional[Dict[int, int]] = None):
        self.directory = os.path.abspath(directory)
        self.disk_sectors = disk_sectors or {}
        self._entries: Optional[List[FirmwareEntry]] = None
        self._patches: Optional[List[Patch]] = None
        self.program_files = sorted(glob.glob(os.path.join(self.directory, "rawprogram*.xml")))
        self.patch_files = sorted(glob.glob(os.path.join(self.directory, "patch*.xml")))
        if not self.program_files:
            raise FileNotFoundError(f"no rawprogram*.xml in {self.directory}")

    def _find(self, filename: str, xml_path: str) -> str:
        for base in (os.path.dirname(xml_path), self.directory):
            candidate = os.path.join(base, filename)
            if os.path.isfile(candidate):
                return candidate
        return ""

    def entries(self) -> List[FirmwareEntry]:
        if self._entries is None:
            self._entries = []
            for path in self.program_files:
                self._entries.extend(self._parse_program(path))
        return list(self._entries)

    def _parse_program(self, xml_path: str) -> Iterator[FirmwareEntry]:
        root = ET.parse(xml_path).getroot()
        for elem in root.iter("program"):
            filename = elem.get("filename", "")
            label = elem.get("label", "")
            if filename.startswith("0:") or not (filename or label):
                continue
            lun = _attr_int(elem, "physical_partition_number")
            sector_size = _attr_int(elem, "SECTOR_SIZE_IN_BYTES", 4096)
            start = _attr_int(elem, "start_sector", 0, self.disk_sectors.get(lun))
            if start is None:
                logger.info("Skipping %s: start sector %s is relative to the disk end",
                            label or filename, elem.get("start_sector"))
                continue
            path = self._find(filename, xml_path) if filename else ""
            if filename and not path:
                logger.warning("%s: image %s not found, layout only", label or filename, filename)
            count = _attr_int(elem, "num_partition_sectors")
            sparse = elem.get("sparse", "false").lower() == "true"
            if path:
                with open(path, "rb") as f:
                    if is_sparse(f):
                        sparse = True
                        size = SparseImageReader(f).logical_size
                    else:
                        size = os.path.getsize(path)
                if not count:
                    count = -(-size // sector_size)
            yield FirmwareEntry(
                name=label or os.path.splitext(filename)[0],
                lun=lun,
                start_sector=start,
                sector_count=count,
                sector_size=sector_size,
                path=path,
                sparse=sparse,
                file_offset=_attr_int(elem, "file_sector_offset") * sector_size,
            )

    def patches(self) -> List[Patch]:
        if self._patches is None:
            self._patches = []
            for path in self.patch_files:
                self._patches.extend(self._parse_patches(path))
        return list(self._patches)

    def _parse_patches(self, xml_path: str) -> Iterator[Patch]:
        root = ET.parse(xml_path).getroot()
        for elem in root.iter("patch"):
            # Other filenames patch the host-side image files, not the device.
            if elem.get("filename", "") != "DISK":
                continue
            lun = _attr_int(elem, "physical_partition_number")
            start = _attr_int(elem, "start_sector", 0, self.disk_sectors.get(lun))
            if start is None:
                logger.info("Skipping patch '%s': start sector relative to the disk end", elem.get("what", ""))
                continue
            yield Patch(
                lun=lun,
                start_sector=start,
                byte_offset=_attr_int(elem, "byte_offset"),
                size=_attr_int(elem, "size_in_bytes"),
                value=elem.get("value", ""),
            )
