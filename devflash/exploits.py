"""Exploit descriptor table.

Loaded once from YAML and shared read-only by every session::

    exploits:
      - chip: MT6765
        name: kamakiri
        payload: payloads/mt6765_payload.bin   # relative to the YAML file
        load_address: 0x100A00
        stage: boot_rom
        ack: bypass                             # or dump, or an integer
"""

from __future__ import annotations

import logging
import os
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple, Union

import yaml

from .models import BootStage, ChipIdentity, ExploitDescriptor

logger = logging.getLogger(__name__)

BYPASS_ACK = 0xA1A2A3A4
DUMP_ACK = 0xC1C2C3C4

ACK_NAMES = MappingProxyType({"bypass": BYPASS_ACK, "dump": DUMP_ACK})


def ack_name(code: Optional[int]) -> str:
    for name, value in ACK_NAMES.items():
        if value == code:
            return name
    return "unknown" if code is None else f"0x{code:08X}"


def chip_key(chip) -> Union[int, str]:
    """Table key for a chip given by name or by hex hardware code."""
    if isinstance(chip, int):
        return chip
    text = str(chip).strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return text.upper()


class ExploitTable:
    """Immutable map of chip -> exploit descriptors."""

    def __init__(self, descriptors: Iterable[ExploitDescriptor] = ()):
        grouped = {}
        for desc in descriptors:
            grouped.setdefault(chip_key(desc.chip), []).append(desc)
        self._by_chip: Mapping[Union[int, str], Tuple[ExploitDescriptor, ...]] = MappingProxyType(
            {chip: tuple(descs) for chip, descs in grouped.items()}
        )

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_chip.values())

    def lookup(self, identity: ChipIdentity) -> Optional[ExploitDescriptor]:
        """First descriptor for this chip (by name or hex hw code) and stage."""
        for key in (chip_key(identity.name), identity.hw_code):
            for desc in self._by_chip.get(key, ()):
                if desc.target_stage == identity.stage:
                    return desc
        return None

    @classmethod
    def from_yaml(cls, path: str) -> "ExploitTable":
        base = os.path.dirname(os.path.abspath(path))
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        descriptors = [_descriptor(entry, base) for entry in data.get("exploits", [])]
        logger.debug("Loaded %d exploit descriptors from %s", len(descriptors), path)
        return cls(descriptors)


def _descriptor(entry: dict, base_dir: str) -> ExploitDescriptor:
    try:
        payload_path = os.path.join(base_dir, entry["payload"])
        chip = entry["chip"]
        name = str(entry.get("name", os.path.basename(payload_path)))
    except KeyError as e:
        raise ValueError(f"exploit entry {entry!r} is missing {e}") from e
    with open(payload_path, "rb") as f:
        payload = f.read()
    ack = entry.get("ack", "bypass")
    if isinstance(ack, str):
        ack = ACK_NAMES[ack.lower()] if ack.lower() in ACK_NAMES else int(ack, 0)
    load_address = entry.get("load_address", 0)
    if isinstance(load_address, str):
        load_address = int(load_address, 0)
    return ExploitDescriptor(
        chip=f"0x{chip:04X}" if isinstance(chip, int) else str(chip),
        name=name,
        payload=payload,
        target_stage=BootStage(entry.get("stage", BootStage.BOOT_ROM.value)),
        ack_code=int(ack),
        load_address=int(load_address),
    )
