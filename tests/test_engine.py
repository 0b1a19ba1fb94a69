"""End-to-end tests for devflash/engine.py against simulated devices."""

from __future__ import annotations

import logging

import pytest

from devflash.commands import binary as bcmd
from devflash.engine import Engine
from devflash.errors import FlashError, HandshakeExhausted, NotAuthorized
from devflash.firmware import RawprogramReader
from devflash.interfaces import SessionState
from devflash.loaders import LoaderBundle, LoaderRepository
from devflash.mocks import MockClock, MockTransport, RecordingSink
from devflash.models import AgentImage, AgentStage, AuthMaterial, Operation, OperationKind, Partition, Patch
from devflash.port_lock import list_all_locks
from devflash.session import AuthState

from fakes import BinaryDevice, HdlcDevice, XmlDevice, build_gpt, sprd_table

GPT_PARTS = [("boot", 64, 127), ("system", 128, 1023), ("persist", 1024, 1039)]


class StaticLoaders(LoaderRepository):
    def __init__(self, bundle=None):
        self.bundle = bundle
        self.asked = []

    def fetch(self, identity):
        self.asked.append(identity.name)
        return self.bundle


def _mtk_bundle(material=None):
    return LoaderBundle([
        AgentImage(b"\x01" * 600, 0x200000, AgentStage.FIRST),
        AgentImage(b"\x02" * 600, 0x40000000, AgentStage.SECOND),
    ], material)


def _engine(config, **kwargs):
    kwargs.setdefault("clock", MockClock())
    return Engine(config, **kwargs)


class TestBinaryDevice:
    def test_connect_loads_agent_and_catalog(self, config):
        device = BinaryDevice(gpt=build_gpt(GPT_PARTS))
        loaders = StaticLoaders(_mtk_bundle())
        session = _engine(config, loaders=loaders).connect("/dev/ttyACM0", device.transport())
        assert session.state == SessionState.READY
        assert session.chip.stage.value == "agent"
        assert loaders.asked == ["MT6765"]
        assert [p.name for p in session.catalog] == ["boot", "system", "persist"]
        assert session.catalog.find("persist").protected

    def test_read_write_over_frames(self, config):
        device = BinaryDevice(gpt=build_gpt(GPT_PARTS), stage=1)
        engine = _engine(config)
        session = engine.connect("/dev/ttyACM0", device.transport())
        boot = session.catalog.find("boot")
        executor = engine.executor(session)
        payload = bytes(range(256)) * 64
        assert executor.write(boot, payload).ok
        assert bytes(device.disk[0][64 * 512:64 * 512 + len(payload)]) == payload
        outcome = executor.read(boot, byte_limit=len(payload))
        assert outcome.data == payload

    def test_erase_uses_format(self, config):
        device = BinaryDevice(gpt=build_gpt(GPT_PARTS), stage=1)
        device.disk[0][64 * 512:65 * 512] = b"\xff" * 512
        engine = _engine(config)
        session = engine.connect("/dev/ttyACM0", device.transport())
        assert engine.executor(session).erase(session.catalog.find("boot")).ok
        assert bcmd.CMD_FORMAT_PARTITION in device.received
        assert bytes(device.disk[0][64 * 512:65 * 512]) == bytes(512)

    def test_protected_partition_needs_auth(self, config):
        device = BinaryDevice(gpt=build_gpt(GPT_PARTS), stage=1)
        engine = _engine(config)
        session = engine.connect("/dev/ttyACM0", device.transport())
        with pytest.raises(NotAuthorized):
            engine.executor(session).read(session.catalog.find("persist"))

    def test_bundle_material_unlocks_protected(self, config):
        material = AuthMaterial(b"D" * 32, b"S" * 256)
        accepted = len(material.digest).to_bytes(4, "little") + material.digest + material.signature
        device = BinaryDevice(gpt=build_gpt(GPT_PARTS), target_config=bcmd.CFG_SLA, sla_accept=accepted)
        engine = _engine(config, loaders=StaticLoaders(_mtk_bundle(material)))
        session = engine.connect("/dev/ttyACM0", device.transport())
        assert session.auth_state == AuthState.ACCEPTED
        assert engine.executor(session).read(session.catalog.find("persist")).ok

    def test_rejected_bundle_material_keeps_session(self, config):
        device = BinaryDevice(gpt=build_gpt(GPT_PARTS), target_config=bcmd.CFG_SLA, sla_accept=b"nope")
        material = AuthMaterial(b"D" * 32, b"S" * 256)
        engine = _engine(config, loaders=StaticLoaders(_mtk_bundle(material)))
        session = engine.connect("/dev/ttyACM0", device.transport())
        assert session.state == SessionState.READY
        assert session.auth_state == AuthState.REJECTED
        executor = engine.executor(session)
        assert executor.read(session.catalog.find("boot"), byte_limit=512).ok
        with pytest.raises(NotAuthorized):
            executor.read(session.catalog.find("persist"))

    def test_no_loader_available(self, config):
        device = BinaryDevice()
        transport = device.transport()
        with pytest.raises(FlashError, match="no agent"):
            _engine(config).connect("/dev/ttyACM0", transport)
        assert not transport.is_open()
        assert list_all_locks() == []

    def test_silent_port_releases_lock(self, config):
        with pytest.raises(HandshakeExhausted):
            _engine(config.replace(handshake_cycles=1)).connect("/dev/ttyACM0", MockTransport())
        assert list_all_locks() == []


class TestXmlDevice:
    def test_flash_batch_with_patch(self, config, tmp_path):
        gpt = build_gpt([("xbl", 6, 15), ("boot", 16, 47)], sector_size=4096)
        device = XmlDevice(gpt=gpt)
        engine = _engine(config)
        session = engine.connect("/dev/ttyACM0", device.transport())
        assert session.variant.value == "xml"
        assert session.catalog.find("boot").sector_size == 4096

        image = tmp_path / "boot.img"
        image.write_bytes(b"ANDROID!" + bytes(8184))
        (tmp_path / "rawprogram0.xml").write_text(
            '<?xml version="1.0" ?><data>'
            '<program SECTOR_SIZE_IN_BYTES="4096" filename="boot.img" label="boot" '
            'num_partition_sectors="32" physical_partition_number="0" start_sector="16"/>'
            '</data>'
        )
        (tmp_path / "patch0.xml").write_text(
            '<?xml version="1.0" ?><patches>'
            '<patch SECTOR_SIZE_IN_BYTES="4096" byte_offset="16" filename="DISK" '
            'physical_partition_number="0" size_in_bytes="4" start_sector="17" value="0x2A"/>'
            '</patches>'
        )
        result = engine.flash(session, RawprogramReader(str(tmp_path)))
        assert result.ok
        assert len(result.applied_patches) == 1
        assert bytes(device.disk[0][16 * 4096:16 * 4096 + 8]) == b"ANDROID!"
        assert bytes(device.disk[0][17 * 4096 + 16:17 * 4096 + 20]) == b"\x2a\x00\x00\x00"
        assert [c for c, _ in device.commands].count("program") == 2


class TestHdlcDevice:
    def _bundle(self):
        return LoaderBundle([
            AgentImage(b"\x0f" * 300, 0x5000, AgentStage.FIRST),
            AgentImage(b"\x2f" * 300, 0x9EFFFE00, AgentStage.SECOND),
        ])

    def test_connect_and_stream_write(self, config):
        device = HdlcDevice(table=sprd_table([("boot", 1), ("system", 2)]))
        sink = RecordingSink()
        engine = _engine(config, loaders=StaticLoaders(self._bundle()), sink=sink)
        session = engine.connect("/dev/ttyUSB0", device.transport())
        assert session.variant.value == "hdlc"
        boot = session.catalog.find("boot")
        assert boot.size_bytes == 1024 * 1024

        data = b"\x5a" * 10000
        assert engine.executor(session).write(boot, data).ok
        assert device.files["boot"] == data
        assert sink.progress[-1] == (10000, 10000)

    def test_lost_baud_switch_recovers_in_agent_context(self, config, caplog):
        device = HdlcDevice(table=sprd_table([("boot", 1)]), follow_baud=False)
        engine = _engine(config.replace(hdlc_fast_baud=921600), loaders=StaticLoaders(self._bundle()))
        with caplog.at_level(logging.WARNING, logger="devflash.engine"):
            session = engine.connect("/dev/ttyUSB0", device.transport())
        assert "restarting handshake" in caplog.text
        assert session.state == SessionState.READY
        assert session.chip.stage.value == "agent"
        assert device.mock.baud_history[-1] == 115200
        assert [address for address, _ in device.downloads] == [0x5000, 0x9EFFFE00]
        assert session.catalog.find("boot").size_bytes == 1024 * 1024

    def test_read_back(self, config):
        device = HdlcDevice(table=sprd_table([("boot", 1)]))
        device.files["boot"] = b"\x11" * 5000
        engine = _engine(config, loaders=StaticLoaders(self._bundle()))
        session = engine.connect("/dev/ttyUSB0", device.transport())
        outcome = engine.executor(session).read(session.catalog.find("boot"), byte_limit=5000)
        assert outcome.data == b"\x11" * 5000

    def test_erase_falls_back_to_zero_fill(self, config):
        device = HdlcDevice(table=sprd_table([("misc", 1)]), erase_supported=False)
        engine = _engine(config, loaders=StaticLoaders(self._bundle()))
        session = engine.connect("/dev/ttyUSB0", device.transport())
        part = session.catalog.find("misc")
        outcome = engine.executor(session).erase(part)
        assert outcome.ok
        assert device.files["misc"] == bytes(part.size_bytes)

    def test_flash_rejects_patches(self, config):
        device = HdlcDevice(table=sprd_table([("boot", 1)]))
        sink = RecordingSink()
        engine = _engine(config, loaders=StaticLoaders(self._bundle()), sink=sink)
        session = engine.connect("/dev/ttyUSB0", device.transport())
        ops = [Operation(OperationKind.WRITE, session.catalog.find("boot"), b"\x01" * 4096)]
        patch = Patch(0, 0, 0, 4, 1, partition_name="boot")
        result = engine.executor(session).batch(ops, [patch])
        assert result.ok
        assert result.skipped_patches == [patch]
        assert any("cannot apply patches" in m for m in sink.warnings())


class TestSharedTables:
    def test_two_sessions_share_read_only_tables(self, config):
        engine = _engine(config)
        a = engine.connect("/dev/ttyACM0", BinaryDevice(gpt=build_gpt(GPT_PARTS), stage=1).transport())
        b = engine.connect("/dev/ttyACM1", BinaryDevice(gpt=build_gpt(GPT_PARTS), stage=1).transport())
        shared = a.command_set.chip_db
        a.invalidate("unplugged")
        assert b.usable
        assert b.catalog.find("boot") == Partition("boot", 0, 64, 64, 512)
        assert b.command_set.chip_db is shared is engine.chip_db
