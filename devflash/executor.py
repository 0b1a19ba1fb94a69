"""
I/O executor: partition reads, writes and erases over a ready session.

Operations stream in blocks of at most ``io_block_size`` bytes (further
capped by what the command set accepts). A CancelToken is polled between
blocks, so cancelling costs at most one block transfer; the operation then
returns a CANCELLED outcome with the bytes done so far.

Batches run sorted by (LUN, start sector), apply patches right after their
base write and stop at the first failure, leaving the rest SKIPPED.
"""

from __future__ import annotations

import io
import logging
import os
import threading
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import DeviceDisconnected, DeviceError, FlashError, SizeMismatch
from .interfaces import ProgressSink
from .models import (
    KIND_RANK,
    BatchResult,
    DataRef,
    Operation,
    OperationKind,
    OperationOutcome,
    OutcomeStatus,
    Partition,
    Patch,
)
from .sparse import SparseImageReader, is_sparse

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag, safe to set from any thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _iter_stream(stream: BinaryIO, block: int) -> Iterator[Tuple[int, bytes]]:
    offset = 0
    while True:
        data = stream.read(block)
        if not data:
            return
        yield offset, data
        offset += len(data)


def _remaining(stream: BinaryIO) -> int:
    pos = stream.tell()
    end = stream.seek(0, io.SEEK_END)
    stream.seek(pos)
    return end - pos


class IOExecutor:
    """Runs operations against the session's command set."""

    def __init__(self, session, sink: Optional[ProgressSink] = None, cancel: Optional[CancelToken] = None):
        self.session = session
        self.sink = sink or session.sink
        self.cancel = cancel or CancelToken()
        self.config = session.config

    # -- public operations ---------------------------------------------------

    def read(self, partition: Partition, destination: DataRef = None,
             byte_limit: Optional[int] = None) -> OperationOutcome:
        """Read a partition into a path or stream; in memory when destination is None."""
        return self.run(Operation(OperationKind.READ, partition, destination, byte_limit))

    def write(self, partition: Partition, source: DataRef) -> OperationOutcome:
        return self.run(Operation(OperationKind.WRITE, partition, source))

    def erase(self, partition: Partition) -> OperationOutcome:
        return self.run(Operation(OperationKind.ERASE, partition))

    def run(self, op: Operation) -> OperationOutcome:
        with self.session.exclusive():
            return self._run(op)

    def batch(self, operations: Iterable[Operation], patches: Sequence[Patch] = ()) -> BatchResult:
        """Run operations in (LUN, start sector) order with post-write patches."""
        with self.session.exclusive():
            return self._batch(list(operations), list(patches))

    # -- internals -------------------------------------------------------------

    def _warn(self, message: str) -> None:
        logger.warning("%s", message)
        if self.sink:
            self.sink.on_log(message, logging.WARNING)

    def _progress(self, op: Operation, done: int) -> None:
        op.progress.done = done
        if self.sink:
            self.sink.on_progress(done, op.progress.total)

    def _cancelled(self, op: Operation) -> bool:
        if self.cancel.cancelled:
            op.progress.cancelled = True
            logger.info("%s of %s cancelled at %d/%d bytes", op.kind.value, op.partition.name,
                        op.progress.done, op.progress.total)
            return True
        return False

    def block_size(self, partition: Partition) -> int:
        block = min(self.config.io_block_size, self.session.command_set.max_block_size)
        block -= block % partition.sector_size
        return max(block, partition.sector_size)

    def _run(self, op: Operation) -> OperationOutcome:
        handler = {
            OperationKind.READ: self._read,
            OperationKind.WRITE: self._write,
            OperationKind.ERASE: self._erase,
        }[op.kind]
        self.session.check_authorized(op.partition)
        try:
            return handler(op)
        except DeviceDisconnected as e:
            self.session.invalidate(str(e))
            raise
        except FlashError as e:
            raise e.with_context(chip=self.session.chip.name if self.session.chip else None)

    def _outcome(self, op: Operation, data: Optional[bytes] = None) -> OperationOutcome:
        status = OutcomeStatus.CANCELLED if op.progress.cancelled else OutcomeStatus.COMPLETED
        return OperationOutcome(op, status, op.progress.done, data=data)

    def _read(self, op: Operation) -> OperationOutcome:
        cs = self.session.command_set
        part = op.partition
        total = part.size_bytes if op.byte_limit is None else min(op.byte_limit, part.size_bytes)
        op.progress.total = total
        block = self.block_size(part)

        buffer = None
        close = False
        if op.data is None:
            dest = buffer = io.BytesIO()
        elif isinstance(op.data, (str, os.PathLike)):
            dest = open(op.data, "wb")
            close = True
        elif isinstance(op.data, (bytes, bytearray)):
            raise TypeError("read destination must be a path or a writable stream")
        else:
            dest = op.data

        try:
            cs.begin_transfer(part, OperationKind.READ, total)
            done = 0
            while done < total and not self._cancelled(op):
                n = min(block, total - done)
                data = cs.read_block(part, done, n)
                if len(data) != n:
                    raise DeviceError(f"short read from {part.name}: {len(data)} of {n} bytes at {done}")
                dest.write(data)
                done += n
                self._progress(op, done)
            cs.end_transfer(part, OperationKind.READ)
        finally:
            if close:
                dest.close()
        return self._outcome(op, buffer.getvalue() if buffer is not None else None)

    def _write(self, op: Operation) -> OperationOutcome:
        cs = self.session.command_set
        part = op.partition
        block = self.block_size(part)

        close = False
        if isinstance(op.data, (bytes, bytearray)):
            stream = io.BytesIO(op.data)
        elif isinstance(op.data, (str, os.PathLike)):
            stream = open(op.data, "rb")
            close = True
            if op.source_offset:
                stream.seek(op.source_offset)
        elif op.data is None:
            raise ValueError(f"write to {part.name} has no source")
        else:
            stream = op.data

        try:
            if is_sparse(stream):
                reader = SparseImageReader(stream)
                total = reader.logical_size
                kind = "sparse image"
                pieces = reader.iter_blocks(block, fill_dont_care=not cs.random_access)
            else:
                total = _remaining(stream)
                kind = "image"
                pieces = _iter_stream(stream, block)
            if total > part.size_bytes:
                raise SizeMismatch(
                    f"{kind} of {total} bytes does not fit {part.name} ({part.size_bytes} bytes)"
                )
            op.progress.total = total
            cs.begin_transfer(part, OperationKind.WRITE, total)
            for offset, data in pieces:
                if self._cancelled(op):
                    break
                cs.write_block(part, offset, data)
                self._progress(op, offset + len(data))
            cs.end_transfer(part, OperationKind.WRITE)
            if not op.progress.cancelled and op.progress.done != total:
                # Trailing DONT_CARE chunks are covered without a transfer.
                self._progress(op, total)
        finally:
            if close:
                stream.close()
        return self._outcome(op)

    def _erase(self, op: Operation) -> OperationOutcome:
        cs = self.session.command_set
        part = op.partition
        total = op.progress.total = part.size_bytes
        if cs.erase(part):
            self._progress(op, total)
            return self._outcome(op)

        logger.info("No protocol erase for %s; zero-filling %d bytes", part.name, total)
        block = self.block_size(part)
        zeros = bytes(min(block, total))
        cs.begin_transfer(part, OperationKind.WRITE, total)
        done = 0
        while done < total and not self._cancelled(op):
            n = min(block, total - done)
            cs.write_block(part, done, zeros if n == len(zeros) else zeros[:n])
            done += n
            self._progress(op, done)
        cs.end_transfer(part, OperationKind.WRITE)
        return self._outcome(op)

    # -- batches -----------------------------------------------------------------

    @staticmethod
    def _patch_target(patch: Patch, ops: Sequence[Operation]) -> Optional[Operation]:
        for op in ops:
            part = op.partition
            if op.kind != OperationKind.WRITE or part.lun != patch.lun:
                continue
            if patch.partition_name:
                if part.name == patch.partition_name:
                    return op
            elif part.start_sector <= patch.start_sector < part.end_sector:
                return op
        return None

    def _batch(self, operations: List[Operation], patches: List[Patch]) -> BatchResult:
        ordered = sorted(
            operations,
            key=lambda op: (op.partition.lun, op.partition.start_sector, KIND_RANK[op.kind]),
        )
        result = BatchResult()
        by_op: Dict[int, List[Patch]] = {}
        for patch in patches:
            target = self._patch_target(patch, ordered)
            if target is None:
                where = patch.partition_name or f"LUN {patch.lun} sector {patch.start_sector}"
                self._warn(f"patch for {where} has no write in this batch; skipped")
                result.skipped_patches.append(patch)
            else:
                by_op.setdefault(id(target), []).append(patch)

        stop = False
        for op in ordered:
            if stop:
                result.outcomes.append(OperationOutcome(op, OutcomeStatus.SKIPPED))
                result.skipped_patches.extend(by_op.get(id(op), ()))
                continue
            try:
                outcome = self._run(op)
                if outcome.ok:
                    self._apply_patches(op, by_op.get(id(op), ()), result)
            except DeviceDisconnected as e:
                outcome = OperationOutcome(op, OutcomeStatus.FAILED, op.progress.done, e)
            except (FlashError, ValueError, OSError) as e:
                logger.error("%s of %s failed: %s", op.kind.value, op.partition.name, e)
                outcome = OperationOutcome(op, OutcomeStatus.FAILED, op.progress.done, e)
            result.outcomes.append(outcome)
            if not outcome.ok:
                stop = True

        if not stop:
            self._activate_boot_lun(result)
        logger.info("Batch done: %d completed, %d failed, %d skipped",
                    len(result.completed), len(result.failed), len(result.skipped))
        return result

    def _apply_patches(self, op: Operation, patches: Sequence[Patch], result: BatchResult) -> None:
        cs = self.session.command_set
        for patch in patches:
            if not cs.supports_patches:
                self._warn(f"{cs.variant.value} cannot apply patches; skipped patch on {op.partition.name}")
                result.skipped_patches.append(patch)
                continue
            try:
                cs.patch(op.partition, patch)
            except (ValueError, NotImplementedError) as e:
                self._warn(f"patch on {op.partition.name} skipped: {e}")
                result.skipped_patches.append(patch)
                continue
            result.applied_patches.append(patch)

    def _activate_boot_lun(self, result: BatchResult) -> None:
        luns = {o.operation.partition.lun for o in result.completed if o.operation.kind == OperationKind.WRITE}
        if len(luns) < 2:
            return
        lun = self.config.boot_lun if self.config.boot_lun in luns else min(luns)
        if self.session.command_set.activate_boot_lun(lun):
            result.boot_lun_activated = lun
            logger.info("Boot LUN %d activated", lun)
