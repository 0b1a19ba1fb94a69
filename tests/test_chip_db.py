"""Tests for devflash/chip_db.py and devflash/exploits.py: shared lookup tables."""

from __future__ import annotations

import pytest

from devflash.chip_db import MEDIATEK, QUALCOMM, SPREADTRUM, ChipDatabase, ChipInfo
from devflash.codecs.base import ProtocolVariant
from devflash.exploits import BYPASS_ACK, DUMP_ACK, ExploitTable, ack_name
from devflash.interfaces import PortInfo
from devflash.models import BootStage, ChipIdentity, ExploitDescriptor, ProtectionState


class TestChipDatabase:
    def test_lookup_by_code(self):
        info = ChipDatabase().lookup(0x0766)
        assert info.name == "MT6765"
        assert info.family == MEDIATEK
        assert info.variant == ProtocolVariant.BINARY_FRAMED

    def test_lookup_by_name_is_case_insensitive(self):
        assert ChipDatabase().by_name("sc9863a").hw_code == 0x9863

    def test_identify_known(self):
        identity = ChipDatabase().identify(0x000A50E1, stage=BootStage.AGENT, serial="c0ffee01")
        assert identity.name == "SM8150"
        assert identity.family == QUALCOMM
        assert identity.key == "A50E1:c0ffee01"

    def test_identify_unknown_code(self):
        identity = ChipDatabase().identify(0x1234)
        assert identity.name == "0x1234"
        assert identity.family == "unknown"
        assert identity.stage == BootStage.BOOT_ROM

    def test_identify_by_name_fallback(self):
        identity = ChipDatabase().identify(0, name="SC9863A")
        assert identity.hw_code == 0x9863
        assert identity.family == SPREADTRUM

    def test_secure_boot_default(self):
        assert ChipDatabase().identify(0x9230).protection.secure_boot
        explicit = ProtectionState(sla=True)
        assert ChipDatabase().identify(0x9230, protection=explicit).protection is explicit

    def test_family_for_port(self):
        assert ChipDatabase.family_for_port(PortInfo("/dev/ttyUSB0", vid=0x1782, pid=0x4D00)) == SPREADTRUM
        assert ChipDatabase.family_for_port(PortInfo("/dev/ttyS0")) is None
        assert ChipDatabase.family_for_port(None) is None

    def test_tables_are_read_only(self):
        db = ChipDatabase()
        with pytest.raises(TypeError):
            db._by_code[0x1] = None

    def test_merged_overrides(self):
        db = ChipDatabase()
        custom = ChipInfo(0x0766, "MT6765-custom", MEDIATEK, ProtocolVariant.BINARY_FRAMED)
        merged = db.merged([custom])
        assert merged.lookup(0x0766).name == "MT6765-custom"
        assert db.lookup(0x0766).name == "MT6765"
        assert len(merged) == len(db)

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "chips.yaml"
        path.write_text(
            "chips:\n"
            "  - hw_code: 0x0950\n"
            "    name: MT6771\n"
            "    family: mediatek\n"
            "    agent_address: '0x200000'\n"
            "  - hw_code: 0x9999\n"
            "    name: T606\n"
            "    family: Spreadtrum\n"
            "    secure_boot: true\n"
        )
        db = ChipDatabase.from_yaml(str(path))
        assert db.lookup(0x0950).agent_address == 0x200000
        assert db.lookup(0x9999).variant == ProtocolVariant.HDLC_FRAMED
        assert db.lookup(0x9999).secure_boot
        assert db.lookup(0x0766) is not None
        only = ChipDatabase.from_yaml(str(path), include_builtin=False)
        assert len(only) == 2

    def test_from_yaml_missing_field(self, tmp_path):
        path = tmp_path / "chips.yaml"
        path.write_text("chips:\n  - hw_code: 1\n    family: qualcomm\n")
        with pytest.raises(ValueError, match="name"):
            ChipDatabase.from_yaml(str(path))


def _identity(name="MT6765", hw_code=0x0766, stage=BootStage.BOOT_ROM):
    return ChipIdentity(hw_code, name, MEDIATEK, stage)


class TestExploitTable:
    def test_ack_names(self):
        assert ack_name(BYPASS_ACK) == "bypass"
        assert ack_name(DUMP_ACK) == "dump"
        assert ack_name(None) == "unknown"
        assert ack_name(0x12) == "0x00000012"

    def test_lookup_matches_name_and_stage(self):
        rom = ExploitDescriptor("mt6765", "rom", b"\x01")
        agent = ExploitDescriptor("MT6765", "agent", b"\x02", BootStage.AGENT)
        table = ExploitTable([rom, agent])
        assert len(table) == 2
        assert table.lookup(_identity()) is rom
        assert table.lookup(_identity(stage=BootStage.AGENT)) is agent
        assert table.lookup(_identity("MT6761", 0x0562)) is None

    def test_lookup_by_hw_code(self):
        desc = ExploitDescriptor("0x0766", "by-code", b"\x01")
        assert ExploitTable([desc]).lookup(_identity("unnamed")) is desc

    def test_from_yaml(self, tmp_path):
        (tmp_path / "payloads").mkdir()
        (tmp_path / "payloads" / "p.bin").write_bytes(b"\xde\xad")
        path = tmp_path / "exploits.yaml"
        path.write_text(
            "exploits:\n"
            "  - chip: MT6765\n"
            "    payload: payloads/p.bin\n"
            "    load_address: '0x100A00'\n"
            "    ack: dump\n"
            "  - chip: MT6761\n"
            "    name: custom\n"
            "    payload: payloads/p.bin\n"
            "    ack: '0x11223344'\n"
            "    stage: agent\n"
        )
        table = ExploitTable.from_yaml(str(path))
        first = table.lookup(_identity())
        assert first.name == "p.bin"
        assert first.payload == b"\xde\xad"
        assert first.load_address == 0x100A00
        assert first.ack_code == DUMP_ACK
        second = table.lookup(_identity("MT6761", 0x0562, BootStage.AGENT))
        assert second.ack_code == 0x11223344

    def test_hw_code_key_spellings(self):
        for chip in ("0x0766", "0X766", " 0x766 "):
            desc = ExploitDescriptor(chip, "by-code", b"\x01")
            assert ExploitTable([desc]).lookup(_identity("unnamed")) is desc

    def test_from_yaml_hw_code_key(self, tmp_path):
        (tmp_path / "p.bin").write_bytes(b"\x01")
        path = tmp_path / "exploits.yaml"
        path.write_text("exploits:\n  - chip: 0x0766\n    payload: p.bin\n")
        desc = ExploitTable.from_yaml(str(path)).lookup(_identity("unnamed"))
        assert desc.chip == "0x0766"

    def test_from_yaml_missing_payload_key(self, tmp_path):
        path = tmp_path / "exploits.yaml"
        path.write_text("exploits:\n  - chip: MT6765\n")
        with pytest.raises(ValueError, match="payload"):
            ExploitTable.from_yaml(str(path))
