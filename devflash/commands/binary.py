"""Binary-framed command set (MediaTek BROM / XFlash style).

Every response echoes the request's command code; its payload starts with a
signed 32-bit status (0 = OK) followed by command-specific data.
"""

from __future__ import annotations

import logging
import struct
from typing import Optional, Tuple

from ..codecs.base import ProtocolVariant
from ..errors import DeviceError, FrameCorruption, FrameError, HandoffTimeout, SignatureRequired, TransportTimeout
from ..models import (
    AgentImage,
    AuthMaterial,
    BootStage,
    ChipIdentity,
    ExploitDescriptor,
    Partition,
    Patch,
    ProtectionState,
)
from .base import CommandSet, PartitionTable, patch_bytes

logger = logging.getLogger(__name__)

# Boot ROM
CMD_JUMP_DA = 0xD5
CMD_SEND_DA = 0xD7
CMD_SEND_CERT = 0xE0
CMD_SLA = 0xE3

# Agent (XFlash numbering)
CMD_WRITE_DATA = 0x010004
CMD_READ_DATA = 0x010005
CMD_FORMAT_PARTITION = 0x010006
CMD_BOOT_TO = 0x010008
CMD_DEVICE_CTRL = 0x010009
CMD_SET_CHECKSUM_LEVEL = 0x020003
CMD_GET_PACKET_LENGTH = 0x040007
CMD_GET_PARTITION_TBL = 0x040009
CMD_GET_CHIP_ID = 0x04000D
SYNC_SIGNAL = 0x434E5953

CTRL_SET_BOOT_LUN = 0x0E0010
CHECKSUM_LEVEL_CRC32 = 1

# target_config bits in the identity reply
CFG_SECURE_BOOT = 0x1
CFG_SLA = 0x2
CFG_DAA = 0x4
CFG_CRC = 0x100

IDENTITY_FMT = "<IIIII"  # hw_code, hw_version, target_config, anti_rollback, stage

STATUS_OK = 0
STATUS_AUTH_FAILED = -8
# Boot ROM DAA rejections
STATUS_DAA_SIG_FAIL = 0x7017
STATUS_DAA_REQUIRED = 0x7015


def split_status(payload: bytes) -> Tuple[int, bytes]:
    if len(payload) < 4:
        raise FrameCorruption(f"response payload of {len(payload)} bytes has no status")
    (status,) = struct.unpack_from("<i", payload)
    return status, payload[4:]


class BinaryCommandSet(CommandSet):
    variant = ProtocolVariant.BINARY_FRAMED

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._packet_length = self.config.io_block_size

    @property
    def max_block_size(self) -> int:
        return min(self.config.io_block_size, self._packet_length, self.link.codec.max_payload - 16)

    def _call(self, command: int, payload: bytes = b"", timeout: Optional[float] = None) -> bytes:
        code, reply = self.link.transact(command, payload, timeout)
        if code != command:
            raise FrameCorruption(f"reply 0x{code:X} to command 0x{command:X}", command=command)
        status, data = split_status(reply)
        if status != STATUS_OK:
            chip = self.identity.name if self.identity else None
            if status in (STATUS_DAA_SIG_FAIL, STATUS_DAA_REQUIRED):
                raise SignatureRequired("device rejected unsigned agent", command=command, chip=chip)
            raise DeviceError("command failed", status=status, command=command, chip=chip)
        return data

    # -- identification ----------------------------------------------------

    def probe_identity(self, timeout: float) -> ChipIdentity:
        self.link.send(CMD_GET_CHIP_ID)
        code, reply = self.link.receive(timeout)
        if code != CMD_GET_CHIP_ID:
            raise FrameCorruption(f"unexpected reply 0x{code:X} to identity probe")
        status, data = split_status(reply)
        if status != STATUS_OK or len(data) < struct.calcsize(IDENTITY_FMT):
            raise FrameCorruption(f"identity reply status {status}, {len(data)} bytes")
        hw_code, hw_version, target_config, anti_rollback, stage = struct.unpack_from(IDENTITY_FMT, data)
        serial = data[struct.calcsize(IDENTITY_FMT):].rstrip(b"\x00").hex()
        protection = ProtectionState(
            secure_boot=bool(target_config & CFG_SECURE_BOOT),
            sla=bool(target_config & CFG_SLA),
            daa=bool(target_config & CFG_DAA),
            anti_rollback=anti_rollback,
        )
        self.identity = self.chip_db.identify(
            hw_code,
            stage=BootStage.AGENT if stage else BootStage.BOOT_ROM,
            serial=serial,
            protection=protection,
            checksum_supported=bool(target_config & CFG_CRC),
        )
        self.stage = self.identity.stage
        logger.debug("Identity: %s hw_version=0x%X config=0x%X", self.identity.name, hw_version, target_config)
        return self.identity

    def enable_checksum(self) -> bool:
        self._call(CMD_SET_CHECKSUM_LEVEL, struct.pack("<I", CHECKSUM_LEVEL_CRC32))
        self.link.codec.checksum = True
        logger.info("CRC32 frame checksums enabled")
        return True

    def prepare(self) -> None:
        if self.identity and self.identity.stage == BootStage.AGENT:
            data = self._call(CMD_GET_PACKET_LENGTH)
            if len(data) >= 4:
                (self._packet_length,) = struct.unpack_from("<I", data)
                logger.debug("Agent packet length %d", self._packet_length)

    # -- agent -------------------------------------------------------------

    def send_exploit(self, descriptor: ExploitDescriptor) -> Optional[int]:
        payload = struct.pack("<I", descriptor.load_address) + descriptor.payload
        data = self._call(CMD_SEND_CERT, payload, self.io_timeout(len(payload)))
        if len(data) < 4:
            return None
        return struct.unpack_from("<I", data)[0]

    def _stream(self, command: int, data: bytes) -> None:
        chunk = self.config.agent_chunk_size
        for pos in range(0, len(data), chunk):
            self._call(command, data[pos:pos + chunk], self.io_timeout(chunk))

    def upload_agent(self, image: AgentImage) -> None:
        if self.stage == BootStage.AGENT:
            self._call(CMD_BOOT_TO, struct.pack("<QQ", image.load_address, len(image.data)))
            self._stream(CMD_BOOT_TO, image.data)
            return
        header = struct.pack("<III", image.load_address, len(image.data), len(image.signature))
        self._call(CMD_SEND_DA, header)
        self._stream(CMD_SEND_DA, image.data + image.signature)

    def jump(self, address: int) -> None:
        if self.stage == BootStage.AGENT:
            # BOOT_TO transfers control once the image is complete.
            return
        self._call(CMD_JUMP_DA, struct.pack("<I", address))

    def wait_ready(self, timeout: float) -> None:
        deadline = self.link.clock.monotonic() + timeout
        last_error = None
        while True:
            remaining = deadline - self.link.clock.monotonic()
            if remaining <= 0:
                raise HandoffTimeout(f"agent not ready after {timeout:.1f}s", command=CMD_JUMP_DA) from last_error
            try:
                code, _ = self.link.receive(remaining)
            except TransportTimeout as e:
                raise HandoffTimeout(f"agent not ready after {timeout:.1f}s", command=CMD_JUMP_DA) from e
            except FrameError as e:
                # Boot noise while the agent starts.
                logger.debug("Discarding garbled frame while waiting for agent: %s", e)
                last_error = e
                continue
            if code == SYNC_SIGNAL:
                return
            logger.debug("Ignoring frame 0x%X while waiting for agent", code)

    def after_handoff(self, image: AgentImage) -> None:
        # The agent starts without checksums until asked again.
        super().after_handoff(image)
        self.link.codec.checksum = False

    # -- auth --------------------------------------------------------------

    def request_challenge(self) -> bytes:
        return self._call(CMD_SLA)

    def send_auth(self, material: AuthMaterial) -> bool:
        if material.token:
            payload = material.token
        else:
            payload = struct.pack("<I", len(material.digest)) + material.digest + material.signature
        try:
            self._call(CMD_SLA, payload)
        except DeviceError as e:
            logger.warning("Authentication refused: %s", e)
            return False
        return True

    # -- storage -----------------------------------------------------------

    def read_partition_table(self, lun: int = 0) -> PartitionTable:
        data = self._call(CMD_GET_PARTITION_TBL, struct.pack("<I", lun), self.config.io_timeout(64 * 1024))
        if len(data) < 4:
            raise FrameCorruption("partition table reply too short", command=CMD_GET_PARTITION_TBL)
        (sector_size,) = struct.unpack_from("<I", data)
        self.sector_size = sector_size
        return PartitionTable("gpt", data[4:], sector_size, lun)

    @staticmethod
    def _address(partition: Partition, offset: int) -> int:
        return partition.start_sector * partition.sector_size + offset

    def read_block(self, partition: Partition, offset: int, size: int) -> bytes:
        request = struct.pack("<IQI", partition.lun, self._address(partition, offset), size)
        return self._call(CMD_READ_DATA, request, self.io_timeout(size))

    def write_block(self, partition: Partition, offset: int, data: bytes) -> None:
        header = struct.pack("<IQ", partition.lun, self._address(partition, offset))
        self._call(CMD_WRITE_DATA, header + data, self.io_timeout(len(data)))

    def erase(self, partition: Partition) -> bool:
        request = struct.pack("<IQQ", partition.lun, self._address(partition, 0), partition.size_bytes)
        self._call(CMD_FORMAT_PARTITION, request, self.io_timeout(partition.size_bytes // 64))
        return True

    def patch(self, partition: Partition, patch: Patch) -> None:
        data = patch_bytes(patch)
        address = patch.start_sector * partition.sector_size + patch.byte_offset
        self._call(CMD_WRITE_DATA, struct.pack("<IQ", patch.lun, address) + data)

    def activate_boot_lun(self, lun: int) -> bool:
        self._call(CMD_DEVICE_CTRL, struct.pack("<II", CTRL_SET_BOOT_LUN, lun))
        return True
