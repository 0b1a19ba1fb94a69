"""Chip database: hardware codes to names, families and defaults.

Built-in entries cover common MediaTek, Qualcomm and Spreadtrum parts. A YAML
file can add or override entries::

    chips:
      - hw_code: 0x0766
        name: MT6765
        family: mediatek
        variant: binary
        agent_address: 0x200000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import yaml

from .codecs.base import ProtocolVariant
from .interfaces import PortInfo
from .models import BootStage, ChipIdentity, ProtectionState

logger = logging.getLogger(__name__)

MEDIATEK = "mediatek"
QUALCOMM = "qualcomm"
SPREADTRUM = "spreadtrum"

# USB vendor ids of download-mode ports.
USB_VENDORS = MappingProxyType({
    0x0E8D: MEDIATEK,
    0x05C6: QUALCOMM,
    0x1782: SPREADTRUM,
})

FAMILY_VARIANTS = MappingProxyType({
    MEDIATEK: ProtocolVariant.BINARY_FRAMED,
    QUALCOMM: ProtocolVariant.XML_COMMAND,
    SPREADTRUM: ProtocolVariant.HDLC_FRAMED,
})


@dataclass(frozen=True)
class ChipInfo:
    hw_code: int
    name: str
    family: str
    variant: ProtocolVariant
    agent_address: int = 0
    payload_address: int = 0
    watchdog_address: int = 0
    secure_boot: bool = False


def _mtk(hw_code, name, agent=0x200000, payload=0x100A00, watchdog=0x10007000):
    return ChipInfo(hw_code, name, MEDIATEK, ProtocolVariant.BINARY_FRAMED, agent, payload, watchdog)


def _qcom(hw_code, name):
    return ChipInfo(hw_code, name, QUALCOMM, ProtocolVariant.XML_COMMAND)


def _sprd(hw_code, name, agent=0x5000, secure_boot=False):
    return ChipInfo(hw_code, name, SPREADTRUM, ProtocolVariant.HDLC_FRAMED, agent, 0, 0, secure_boot)


BUILTIN_CHIPS = (
    _mtk(0x6572, "MT6572"),
    _mtk(0x6582, "MT6582"),
    _mtk(0x0321, "MT6735"),
    _mtk(0x0335, "MT6737"),
    _mtk(0x0326, "MT6755"),
    _mtk(0x0601, "MT6757"),
    _mtk(0x0562, "MT6761"),
    _mtk(0x0766, "MT6765"),
    _mtk(0x0707, "MT6768"),
    _mtk(0x0813, "MT6785", payload=0x100A00, watchdog=0x10007000),
    _qcom(0x000460E1, "MSM8953"),
    _qcom(0x0008B0E1, "SDM845"),
    _qcom(0x000A50E1, "SM8150"),
    _sprd(0x7731, "SC7731E"),
    _sprd(0x9832, "SC9832E"),
    _sprd(0x9863, "SC9863A"),
    _sprd(0x9230, "UMS9230", secure_boot=True),
)


class ChipDatabase:
    """Read-only lookup of chip metadata, shared by reference between sessions."""

    def __init__(self, chips: Iterable[ChipInfo] = BUILTIN_CHIPS):
        by_code = {}
        by_name = {}
        for chip in chips:
            by_code[chip.hw_code] = chip
            by_name[chip.name.upper()] = chip
        self._by_code: Mapping[int, ChipInfo] = MappingProxyType(by_code)
        self._by_name: Mapping[str, ChipInfo] = MappingProxyType(by_name)

    def __len__(self) -> int:
        return len(self._by_code)

    def lookup(self, hw_code: int) -> Optional[ChipInfo]:
        return self._by_code.get(hw_code)

    def by_name(self, name: str) -> Optional[ChipInfo]:
        return self._by_name.get(name.upper())

    @staticmethod
    def family_for_port(port: Optional[PortInfo]) -> Optional[str]:
        if port is None or port.vid is None:
            return None
        return USB_VENDORS.get(port.vid)

    def identify(
        self,
        hw_code: int,
        *,
        stage: BootStage = BootStage.BOOT_ROM,
        serial: str = "",
        protection: Optional[ProtectionState] = None,
        checksum_supported: bool = False,
        name: str = "",
        family: str = "",
    ) -> ChipIdentity:
        """Build a ChipIdentity, filling name/family from the database."""
        info = self.lookup(hw_code) or (self.by_name(name) if name else None)
        if info is None:
            logger.info("Chip 0x%04X not in database", hw_code)
        if protection is None:
            protection = ProtectionState(secure_boot=bool(info and info.secure_boot))
        return ChipIdentity(
            hw_code=hw_code or (info.hw_code if info else 0),
            name=info.name if info else (name or f"0x{hw_code:04X}"),
            family=info.family if info else (family or "unknown"),
            stage=stage,
            serial=serial,
            protection=protection,
            checksum_supported=checksum_supported,
        )

    def merged(self, chips: Iterable[ChipInfo]) -> "ChipDatabase":
        combined = dict(self._by_code)
        for chip in chips:
            combined[chip.hw_code] = chip
        return ChipDatabase(combined.values())

    @classmethod
    def from_yaml(cls, path: str, include_builtin: bool = True) -> "ChipDatabase":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        chips = [_chip_from_dict(entry) for entry in data.get("chips", [])]
        base = cls() if include_builtin else cls(())
        logger.debug("Loaded %d chip entries from %s", len(chips), path)
        return base.merged(chips)


def _chip_from_dict(entry: dict) -> ChipInfo:
    try:
        family = entry["family"].lower()
        variant = entry.get("variant")
        chip = ChipInfo(
            hw_code=_int(entry["hw_code"]),
            name=str(entry["name"]),
            family=family,
            variant=ProtocolVariant(variant) if variant else FAMILY_VARIANTS[family],
        )
    except KeyError as e:
        raise ValueError(f"chip entry {entry!r} is missing {e}") from e
    return replace(
        chip,
        agent_address=_int(entry.get("agent_address", 0)),
        payload_address=_int(entry.get("payload_address", 0)),
        watchdog_address=_int(entry.get("watchdog_address", 0)),
        secure_boot=bool(entry.get("secure_boot", False)),
    )


def _int(value) -> int:
    return int(value, 0) if isinstance(value, str) else int(value)
