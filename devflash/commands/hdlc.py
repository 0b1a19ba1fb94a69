"""HDLC command set (Spreadtrum BSL/FDL style).

Storage is addressed by partition name and streamed sequentially:
``READ_START``/``READ_MIDST``/``READ_END`` for reads, ``START_DATA``/
``MIDST_DATA``/``END_DATA`` for writes.
"""

from __future__ import annotations

import logging
import struct
from typing import Optional

from ..chip_db import SPREADTRUM
from ..codecs import hdlc
from ..codecs.base import ProtocolVariant
from ..codecs.hdlc import ChecksumMode
from ..errors import (
    Desynchronized,
    DeviceError,
    FlashError,
    FrameError,
    HandoffTimeout,
    SignatureRequired,
    TransportTimeout,
)
from ..models import AgentImage, AuthMaterial, ChipIdentity, ExploitDescriptor, OperationKind, Partition
from .base import CommandSet, PartitionTable

logger = logging.getLogger(__name__)

NAME_FIELD = 72  # UTF-16LE, zero padded
# Leaves room for escaping inside the 16-bit length field.
MAX_BLOCK = 0x8000
READY_POLL = 0.2

_ERRORS = {
    hdlc.REP_INVALID_CMD: "invalid command",
    hdlc.REP_OPERATION_FAILED: "operation failed",
    hdlc.REP_VERIFY_ERROR: "verify error",
    hdlc.REP_SIGN_VERIFY_ERROR: "signature verify error",
    hdlc.REP_UNSUPPORTED: "unsupported command",
}


def encode_name(name: str) -> bytes:
    raw = name.encode("utf-16-le")
    if len(raw) > NAME_FIELD:
        raise ValueError(f"partition name {name!r} longer than {NAME_FIELD // 2} characters")
    return raw.ljust(NAME_FIELD, b"\x00")


class HdlcCommandSet(CommandSet):
    variant = ProtocolVariant.HDLC_FRAMED
    random_access = False
    supports_patches = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._stream_offset = 0

    def log_filter(self, command, payload) -> Optional[str]:
        if command == hdlc.REP_LOG:
            return payload.decode("utf-8", "replace").rstrip("\x00")
        return None

    @property
    def max_block_size(self) -> int:
        return min(self.config.io_block_size, MAX_BLOCK)

    def _expect_ack(self, command: int, payload: bytes = b"", timeout: Optional[float] = None) -> bytes:
        reply, data = self.link.transact(command, payload, timeout)
        if reply == hdlc.REP_ACK:
            return data
        chip = self.identity.name if self.identity else None
        if reply == hdlc.REP_SIGN_VERIFY_ERROR:
            raise SignatureRequired("device rejected the signature", command=command, chip=chip)
        raise DeviceError(_ERRORS.get(reply, f"reply 0x{reply:02X}"), status=reply, command=command, chip=chip)

    # -- identification ----------------------------------------------------

    def _check_baud(self, timeout: float) -> str:
        """Send the raw sync byte; the device answers with its version string."""
        self.link.last_command = hdlc.CHECK_BAUD
        self.link.write_raw(bytes([hdlc.CHECK_BAUD]))
        reply, data = self.link.receive(timeout)
        if reply != hdlc.REP_VER:
            raise DeviceError(f"expected version reply, got 0x{reply:02X}", status=reply, command=hdlc.CHECK_BAUD)
        return data.decode("ascii", "replace").rstrip("\x00").strip()

    def _connect(self, timeout: float) -> None:
        self.link.send(hdlc.CONNECT)
        reply, _ = self.link.receive(timeout)
        if reply != hdlc.REP_ACK:
            raise DeviceError("connect refused", status=reply, command=hdlc.CONNECT)

    def probe_identity(self, timeout: float) -> ChipIdentity:
        version = self._check_baud(timeout)
        self._connect(timeout)
        info = self.chip_db.by_name(version.split()[0]) if version else None
        self.identity = self.chip_db.identify(
            info.hw_code if info else 0,
            stage=self.stage,
            name=version or "spreadtrum",
            family=SPREADTRUM,
        )
        logger.debug("Version %r at stage %s", version, self.stage.value)
        return self.identity

    def switch_baud(self, rate: int) -> bool:
        transport = self.link.transport
        if not transport.supports_baud_rate:
            return False
        self._expect_ack(hdlc.CHANGE_BAUD, struct.pack(">I", rate))
        transport.set_baud_rate(rate)
        window = self.config.baud_grace_window
        deadline = self.link.clock.monotonic() + window
        while self.link.clock.monotonic() < deadline:
            try:
                self._check_baud(min(READY_POLL, window))
                logger.info("Link now at %d baud", rate)
                return True
            except (TransportTimeout, FrameError):
                self.link.clock.sleep(0.05)
        raise Desynchronized(f"device silent {window:.1f}s after switching to {rate} baud",
                             command=hdlc.CHANGE_BAUD)

    # -- agent -------------------------------------------------------------

    def _download(self, address: int, data: bytes) -> None:
        self._expect_ack(hdlc.START_DATA, struct.pack(">II", address, len(data)))
        chunk = min(self.config.agent_chunk_size, MAX_BLOCK)
        for pos in range(0, len(data), chunk):
            self._expect_ack(hdlc.MIDST_DATA, data[pos:pos + chunk], self.io_timeout(chunk))
        self._expect_ack(hdlc.END_DATA)

    def send_exploit(self, descriptor: ExploitDescriptor) -> Optional[int]:
        self._download(descriptor.load_address, descriptor.payload)
        reply, data = self.link.transact(hdlc.EXEC_DATA)
        if reply != hdlc.REP_ACK or len(data) < 4:
            logger.debug("Exploit reply 0x%02X with %d bytes", reply, len(data))
            return None
        return struct.unpack_from(">I", data)[0]

    def upload_agent(self, image: AgentImage) -> None:
        self._download(image.load_address, image.data)
        if image.signature:
            self._expect_ack(hdlc.SEND_SIGNATURE, image.signature)

    def jump(self, address: int) -> None:
        # The boot ROM does not answer EXEC; the agent announces itself instead.
        self.link.send(hdlc.EXEC_DATA)

    def after_handoff(self, image: AgentImage) -> None:
        super().after_handoff(image)
        self.link.codec.checksum_mode = ChecksumMode.SUM

    def wait_ready(self, timeout: float) -> None:
        deadline = self.link.clock.monotonic() + timeout
        while True:
            remaining = deadline - self.link.clock.monotonic()
            if remaining <= 0:
                raise HandoffTimeout(f"agent not ready after {timeout:.1f}s", command=hdlc.EXEC_DATA)
            try:
                self._check_baud(min(READY_POLL, remaining))
                self._connect(min(READY_POLL, remaining))
                return
            except (TransportTimeout, FrameError, DeviceError) as e:
                logger.debug("Agent not ready yet: %s", e)
                self.link.clock.sleep(min(0.05, max(remaining, 0)))

    # -- auth --------------------------------------------------------------

    def request_challenge(self) -> bytes:
        reply, data = self.link.transact(hdlc.READ_CHIP_UID)
        if reply != hdlc.REP_READ_CHIP_UID:
            raise DeviceError("chip uid unavailable", status=reply, command=hdlc.READ_CHIP_UID)
        return data

    def send_auth(self, material: AuthMaterial) -> bool:
        blob = material.token or material.signature
        try:
            self._expect_ack(hdlc.SEND_SIGNATURE, blob)
        except (SignatureRequired, DeviceError) as e:
            logger.warning("Signature refused: %s", e)
            return False
        return True

    # -- storage -----------------------------------------------------------

    def read_partition_table(self, lun: int = 0) -> PartitionTable:
        reply, data = self.link.transact(hdlc.READ_PARTITION)
        if reply != hdlc.REP_PARTITION:
            raise DeviceError("partition table unavailable", status=reply, command=hdlc.READ_PARTITION)
        return PartitionTable("sprd", data, 512, lun)

    def begin_transfer(self, partition: Partition, kind: OperationKind, total: int) -> None:
        self._stream_offset = 0
        name = encode_name(partition.name)
        if kind == OperationKind.READ:
            self._expect_ack(hdlc.READ_START, name + struct.pack("<I", total))
        elif kind == OperationKind.WRITE:
            self._expect_ack(hdlc.START_DATA, name + struct.pack("<Q", total))

    def end_transfer(self, partition: Partition, kind: OperationKind) -> None:
        if kind == OperationKind.READ:
            self._expect_ack(hdlc.READ_END)
        elif kind == OperationKind.WRITE:
            self._expect_ack(hdlc.END_DATA, timeout=self.io_timeout(partition.size_bytes // 16))

    def read_block(self, partition: Partition, offset: int, size: int) -> bytes:
        if offset >> 32:
            request = struct.pack("<III", size, offset & 0xFFFFFFFF, offset >> 32)
        else:
            request = struct.pack("<II", size, offset)
        reply, data = self.link.transact(hdlc.READ_MIDST, request, self.io_timeout(size))
        if reply != hdlc.REP_READ_FLASH:
            raise DeviceError("read failed", status=reply, command=hdlc.READ_MIDST)
        return data

    def write_block(self, partition: Partition, offset: int, data: bytes) -> None:
        if offset != self._stream_offset:
            raise FlashError(f"non-sequential write at {offset}, stream is at {self._stream_offset}",
                             command=hdlc.MIDST_DATA)
        self._expect_ack(hdlc.MIDST_DATA, data, self.io_timeout(len(data)))
        self._stream_offset += len(data)

    def erase(self, partition: Partition) -> bool:
        reply, _ = self.link.transact(hdlc.ERASE_FLASH, encode_name(partition.name) + struct.pack("<Q", partition.size_bytes),
                                      self.io_timeout(partition.size_bytes // 64))
        if reply in (hdlc.REP_UNSUPPORTED, hdlc.REP_INVALID_CMD):
            return False
        if reply != hdlc.REP_ACK:
            raise DeviceError("erase failed", status=reply, command=hdlc.ERASE_FLASH)
        return True
