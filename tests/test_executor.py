"""Tests for devflash/executor.py: block I/O, batches and cancellation."""

from __future__ import annotations

import io
import tracemalloc

import pytest

from devflash.auth import NoAuth
from devflash.errors import DeviceDisconnected, DeviceError, NotAuthorized, SessionClosed, SizeMismatch
from devflash.executor import CancelToken, IOExecutor
from devflash.interfaces import SessionState
from devflash.models import Operation, OperationKind, OutcomeStatus, Partition, Patch

from fakes import MemoryCommandSet, expand_sparse, make_sparse, ready_session

MIB = 1024 * 1024


@pytest.fixture
def cs(config):
    return MemoryCommandSet(config)


@pytest.fixture
def session(cs, sink):
    return ready_session(cs, sink=sink)


@pytest.fixture
def executor(session):
    return IOExecutor(session)


class TestReadWrite:
    def test_write_then_read_back(self, cs, executor):
        part = Partition("boot", 0, 64, 32)
        data = bytes(range(256)) * 40
        assert executor.write(part, data).ok
        outcome = executor.read(part, byte_limit=len(data))
        assert outcome.ok
        assert outcome.data == data
        assert cs.blocks_written == 3

    def test_read_to_path(self, cs, executor, tmp_path):
        part = Partition("boot", 0, 0, 16)
        cs.store(0, 0, b"\xaa" * 8192)
        dest = tmp_path / "boot.img"
        outcome = executor.read(part, str(dest))
        assert outcome.ok and outcome.data is None
        assert dest.read_bytes() == b"\xaa" * 8192

    def test_read_to_stream(self, executor):
        buf = io.BytesIO()
        executor.read(Partition("boot", 0, 0, 8), buf)
        assert len(buf.getvalue()) == 4096

    def test_read_into_bytes_is_rejected(self, executor):
        with pytest.raises(TypeError):
            executor.read(Partition("boot", 0, 0, 8), b"not a destination")

    def test_progress_reaches_total(self, executor, sink):
        executor.write(Partition("boot", 0, 0, 64), bytes(10000))
        assert sink.progress[-1] == (10000, 10000)
        assert [d for d, _ in sink.progress] == sorted(d for d, _ in sink.progress)

    def test_write_from_path(self, cs, executor, tmp_path):
        image = tmp_path / "vbmeta.img"
        image.write_bytes(b"AVB0" + bytes(1020))
        part = Partition("vbmeta", 0, 10, 8)
        assert executor.write(part, str(image)).ok
        assert cs.read_bytes(part, 0, 4) == b"AVB0"

    def test_write_from_path_at_offset(self, cs, executor, tmp_path):
        image = tmp_path / "combined.bin"
        image.write_bytes(b"A" * 1024 + b"B" * 1024)
        part = Partition("second", 0, 10, 8)
        outcome = executor.run(Operation(OperationKind.WRITE, part, str(image), source_offset=1024))
        assert outcome.ok
        assert outcome.bytes_done == 1024
        assert cs.read_bytes(part, 0, 1024) == b"B" * 1024

    def test_write_without_source(self, executor):
        with pytest.raises(ValueError):
            executor.write(Partition("boot", 0, 0, 8), None)

    def test_block_size_respects_sector_size(self, config):
        ex = IOExecutor(_session_of(MemoryCommandSet(config.replace(io_block_size=6000))))
        assert ex.block_size(Partition("x", 0, 0, 1, 4096)) == 4096
        assert ex.block_size(Partition("x", 0, 0, 1, 512)) == 5632

    def test_short_read_is_device_error(self, cs, executor):
        cs.read_block = lambda part, offset, size: b"\x00" * (size - 1)
        with pytest.raises(DeviceError, match="short read"):
            executor.read(Partition("boot", 0, 0, 8))


class TestSizeChecks:
    def test_oversized_image_rejected_before_transfer(self, cs, executor):
        with pytest.raises(SizeMismatch):
            executor.write(Partition("tiny", 0, 0, 2), bytes(2048))
        assert cs.calls == []

    def test_oversized_sparse_rejected_on_logical_size(self, cs, executor):
        image = make_sparse([("raw", b"\x01" * 4096), ("dont_care", 100)])
        with pytest.raises(SizeMismatch, match="sparse"):
            executor.write(Partition("small", 0, 0, 64), image)
        assert cs.blocks_written == 0


class TestSparseWrites:
    CHUNKS = [
        ("raw", b"\x11" * 8192),
        ("dont_care", 3),
        ("fill", b"\xca\xfe\xba\xbe", 2),
        ("raw", b"\x22" * 4096),
    ]

    def test_matches_expanded_write(self, config):
        part = Partition("super", 0, 1000, 128)
        sparse_cs = MemoryCommandSet(config)
        IOExecutor(_session_of(sparse_cs, "/dev/ttyFAKE1")).write(part, make_sparse(self.CHUNKS))
        raw_cs = MemoryCommandSet(config)
        IOExecutor(_session_of(raw_cs, "/dev/ttyFAKE2")).write(part, expand_sparse(self.CHUNKS))
        assert sparse_cs.pages == raw_cs.pages

    def test_sequential_target_gets_holes_zero_filled(self, config):
        part = Partition("system", 0, 0, 128)
        seq = MemoryCommandSet(config, random_access=False)
        outcome = IOExecutor(_session_of(seq)).write(part, make_sparse(self.CHUNKS))
        assert outcome.ok
        assert seq.blocks_written == 8

    def test_large_sparse_image_streams_in_bounded_memory(self, config):
        blocks = (1 << 30) // 4096
        image = make_sparse([("raw", b"\xab" * 4096), ("dont_care", blocks - 1)])
        assert len(image) < 5000
        cs = MemoryCommandSet(config.replace(io_block_size=MIB))
        part = Partition("userdata", 0, 2048, (1 << 30) // 512)
        ex = IOExecutor(_session_of(cs))
        tracemalloc.start()
        try:
            outcome = ex.write(part, image)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()
        assert outcome.ok
        assert outcome.bytes_done == 1 << 30
        assert peak < 8 * MIB
        assert cs.read_bytes(part, 0, 4096) == b"\xab" * 4096


def _session_of(cs, port="/dev/ttyFAKE3"):
    return ready_session(cs, port=port)


class TestErase:
    def test_protocol_erase(self, cs, executor):
        part = Partition("cache", 0, 0, 16)
        cs.store(0, 0, b"\x01" * 4096)
        assert executor.erase(part).ok
        assert ("erase", "cache") in cs.calls
        assert cs.blocks_written == 0
        assert cs.read_bytes(part, 0, 4096) == bytes(4096)

    def test_zero_fill_fallback(self, config):
        cs = MemoryCommandSet(config, has_erase=False)
        part = Partition("cache", 0, 0, 24)
        cs.store(0, 0, b"\x01" * part.size_bytes)
        outcome = IOExecutor(_session_of(cs)).erase(part)
        assert outcome.ok
        assert outcome.bytes_done == part.size_bytes
        assert cs.blocks_written == 3
        assert cs.read_bytes(part, 0, part.size_bytes) == bytes(part.size_bytes)


class TestCancellation:
    def test_cancel_mid_read(self, cs, session):
        token = CancelToken()
        ex = IOExecutor(session, cancel=token)

        def on_block(kind, part, offset):
            if cs.blocks_read == 2:
                token.cancel()

        cs.on_block = on_block
        outcome = ex.read(Partition("userdata", 0, 0, 16 * 8))
        assert outcome.status == OutcomeStatus.CANCELLED
        assert outcome.bytes_done == 2 * 4096
        assert cs.blocks_read == 2
        assert session.usable

    def test_cancel_mid_write(self, cs, session):
        token = CancelToken()
        cs.on_block = lambda kind, part, offset: token.cancel()
        outcome = IOExecutor(session, cancel=token).write(Partition("boot", 0, 0, 64), bytes(16384))
        assert outcome.status == OutcomeStatus.CANCELLED
        assert outcome.bytes_done == 4096


class TestAuthorization:
    def test_protected_write_needs_privilege(self, session, executor):
        session.catalog.load([Partition("persist", 0, 0, 8), Partition("boot", 0, 8, 8)])
        session.authenticate(NoAuth())
        with pytest.raises(NotAuthorized):
            executor.write(session.catalog.find("persist"), bytes(512))
        assert executor.read(session.catalog.find("boot")).ok

    def test_protected_read_is_also_gated(self, session, executor):
        session.catalog.load([Partition("frp", 0, 0, 8)])
        with pytest.raises(NotAuthorized):
            executor.read(session.catalog.find("frp"))


class TestBatch:
    def test_sorted_by_lun_and_start_sector(self, cs, executor):
        ops = [
            Operation(OperationKind.WRITE, Partition("c", 0, 500, 8), bytes(512)),
            Operation(OperationKind.WRITE, Partition("a", 0, 100, 8), bytes(512)),
            Operation(OperationKind.WRITE, Partition("b", 0, 300, 8), bytes(512)),
        ]
        result = executor.batch(ops)
        assert result.ok
        assert cs.write_order == ["a", "b", "c"]

    def test_erase_before_write_before_read_at_same_sector(self, cs, executor):
        part = Partition("boot", 0, 0, 8)
        ops = [
            Operation(OperationKind.READ, part),
            Operation(OperationKind.WRITE, part, b"\x01" * 512),
            Operation(OperationKind.ERASE, part),
        ]
        result = executor.batch(ops)
        assert [o.operation.kind for o in result.outcomes] == [
            OperationKind.ERASE, OperationKind.WRITE, OperationKind.READ,
        ]
        assert result.outcomes[-1].data[:512] == b"\x01" * 512

    def test_stops_at_first_failure(self, cs, executor):
        cs.fail_on["b"] = DeviceError("write refused", status=5)
        ops = [Operation(OperationKind.WRITE, Partition(n, 0, s, 8), bytes(512))
               for n, s in (("a", 0), ("b", 8), ("c", 16))]
        result = executor.batch(ops)
        assert [o.status for o in result.outcomes] == [
            OutcomeStatus.COMPLETED, OutcomeStatus.FAILED, OutcomeStatus.SKIPPED,
        ]
        assert "write refused" in str(result.failed[0].error)
        assert cs.write_order == ["a", "b"]

    def test_disconnect_invalidates_session(self, cs, session, executor, sink):
        cs.fail_on["b"] = DeviceDisconnected("device went away")
        ops = [Operation(OperationKind.WRITE, Partition(n, 0, s, 8), bytes(512))
               for n, s in (("a", 0), ("b", 8), ("c", 16))]
        result = executor.batch(ops)
        assert result.failed[0].operation.partition.name == "b"
        assert result.skipped[0].operation.partition.name == "c"
        assert session.state == SessionState.INVALIDATED
        assert any("invalidated" in m for m in sink.warnings())
        with pytest.raises(SessionClosed):
            executor.read(Partition("a", 0, 0, 8))

    def test_patches_follow_their_write(self, cs, executor):
        part = Partition("gpt_main", 0, 0, 8)
        patch = Patch(lun=0, start_sector=1, byte_offset=32, size=8, value="0x1122")
        result = executor.batch([Operation(OperationKind.WRITE, part, b"\xff" * 4096)], [patch])
        assert result.applied_patches == [patch]
        assert cs.read_bytes(part, 512 + 32, 8) == (0x1122).to_bytes(8, "little")

    def test_patch_without_write_is_skipped_with_warning(self, cs, executor, sink):
        patch = Patch(lun=3, start_sector=1, byte_offset=0, size=4, value=1)
        result = executor.batch([Operation(OperationKind.WRITE, Partition("boot", 0, 0, 8), bytes(512))], [patch])
        assert result.ok
        assert result.skipped_patches == [patch]
        assert any("no write in this batch" in m for m in sink.warnings())
        assert cs.patched == []

    def test_expression_patch_is_skipped(self, cs, executor, sink):
        patch = Patch(lun=0, start_sector=1, byte_offset=0, size=8, value="NUM_DISK_SECTORS-5.")
        result = executor.batch([Operation(OperationKind.WRITE, Partition("gpt", 0, 0, 8), bytes(512))], [patch])
        assert result.ok
        assert result.skipped_patches == [patch]
        assert sink.warnings()

    def test_variant_without_patches(self, config, sink):
        cs = MemoryCommandSet(config, supports_patches=False)
        ex = IOExecutor(ready_session(cs, sink=sink))
        patch = Patch(lun=0, start_sector=0, byte_offset=0, size=4, value=7, partition_name="boot")
        result = ex.batch([Operation(OperationKind.WRITE, Partition("boot", 0, 0, 8), bytes(512))], [patch])
        assert result.skipped_patches == [patch]
        assert cs.patched == []

    def test_multi_lun_batch_activates_boot_lun(self, cs, executor, config):
        ops = [
            Operation(OperationKind.WRITE, Partition("xbl_a", 1, 6, 8), bytes(512)),
            Operation(OperationKind.WRITE, Partition("boot_a", 0, 64, 8), bytes(512)),
        ]
        result = executor.batch(ops)
        assert result.boot_lun_activated == config.boot_lun == 1
        assert cs.boot_lun == 1

    def test_single_lun_batch_leaves_boot_lun(self, cs, executor):
        executor.batch([Operation(OperationKind.WRITE, Partition("boot", 0, 0, 8), bytes(512))])
        assert cs.boot_lun is None

    def test_failed_batch_leaves_boot_lun(self, cs, executor):
        cs.fail_on["xbl_a"] = DeviceError("nope")
        ops = [
            Operation(OperationKind.WRITE, Partition("boot_a", 0, 64, 8), bytes(512)),
            Operation(OperationKind.WRITE, Partition("xbl_a", 1, 6, 8), bytes(512)),
        ]
        executor.batch(ops)
        assert cs.boot_lun is None
