"""XML command set (Qualcomm Firehose style).

Bulk data moves in raw mode: the device answers a ``read``/``program``
element with ``<response value="ACK" rawmode="true"/>``, the sector data
follows unframed, and a second response closes the transfer.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from ..codecs.base import ProtocolVariant
from ..codecs.xml_command import is_ack, is_true
from ..errors import DeviceError, FrameCorruption, FrameError, HandoffTimeout, TransportTimeout
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
from .base import CommandSet, PartitionTable

logger = logging.getLogger(__name__)

UFS_SECTOR = 4096
EMMC_SECTOR = 512
# Protective MBR + header + 32 sectors of 128 entries at 512 bytes.
GPT_SECTORS = {EMMC_SECTOR: 34, UFS_SECTOR: 6}


def _int(attrs: Dict[str, str], name: str, default: int = 0) -> int:
    value = attrs.get(name, "").strip()
    if not value:
        return default
    return int(value, 0)


class XmlCommandSet(CommandSet):
    variant = ProtocolVariant.XML_COMMAND

    def __init__(self, *args, memory: str = "ufs", **kwargs):
        super().__init__(*args, **kwargs)
        self.memory = memory
        self.sector_size = UFS_SECTOR if memory == "ufs" else EMMC_SECTOR
        self.max_payload = self.config.io_block_size

    def log_filter(self, command, payload) -> Optional[str]:
        if command == "log":
            return payload.get("value", "")
        return None

    @property
    def max_block_size(self) -> int:
        return min(self.config.io_block_size, self.max_payload)

    def _chip(self) -> Optional[str]:
        return self.identity.name if self.identity else None

    def _call(self, command: str, attrs: Optional[dict] = None, timeout: Optional[float] = None) -> Dict[str, str]:
        tag, reply = self.link.transact(command, attrs or {}, timeout)
        return self._check(command, tag, reply)

    def _check(self, command: str, tag: str, reply: Dict[str, str]) -> Dict[str, str]:
        if tag != "response":
            raise FrameCorruption(f"expected <response>, got <{tag}>", command=command)
        if not is_ack(reply):
            raise DeviceError(f"NAK: {reply.get('error', reply.get('value', ''))}".strip(), command=command, chip=self._chip())
        return reply

    def _finish(self, command: str, timeout: Optional[float] = None) -> Dict[str, str]:
        tag, reply = self.link.receive(timeout)
        return self._check(command, tag, reply)

    def _raw_out(self, command: str, attrs: dict, data: bytes) -> Dict[str, str]:
        reply = self._call(command, attrs)
        if not is_true(reply, "rawmode"):
            raise FrameCorruption("device did not enter raw mode", command=command)
        self.link.write_raw(data)
        return self._finish(command, self.io_timeout(len(data)))

    # -- identification ----------------------------------------------------

    def probe_identity(self, timeout: float) -> ChipIdentity:
        self.link.send("nop")
        tag, reply = self.link.receive(timeout)
        self._check("nop", tag, reply)
        protection = ProtectionState(
            secure_boot=is_true(reply, "secure_boot"),
            sla=is_true(reply, "sla"),
            daa=is_true(reply, "daa"),
            anti_rollback=_int(reply, "anti_rollback"),
        )
        stage = BootStage.AGENT if reply.get("stage", "").strip().lower() == "agent" else BootStage.BOOT_ROM
        self.identity = self.chip_db.identify(
            _int(reply, "chip_id"),
            stage=stage,
            serial=reply.get("serial", "").strip(),
            protection=protection,
            name=reply.get("chip", "").strip(),
        )
        self.stage = stage
        return self.identity

    def prepare(self) -> None:
        if not self.identity or self.identity.stage != BootStage.AGENT:
            return
        attrs = {
            "MemoryName": self.memory,
            "MaxPayloadSizeToTargetInBytes": self.max_payload,
            "ZlpAwareHost": 1,
            "SkipStorageInit": 0,
        }
        tag, reply = self.link.transact("configure", attrs)
        if tag == "response" and not is_ack(reply) and "MaxPayloadSizeToTargetInBytesSupported" in reply:
            # Retry with what the target says it can take.
            attrs["MaxPayloadSizeToTargetInBytes"] = _int(reply, "MaxPayloadSizeToTargetInBytesSupported")
            tag, reply = self.link.transact("configure", attrs)
        reply = self._check("configure", tag, reply)
        self.max_payload = _int(reply, "MaxPayloadSizeToTargetInBytes", attrs["MaxPayloadSizeToTargetInBytes"])
        self.sector_size = _int(reply, "SectorSizeInBytes", self.sector_size)
        logger.info("Configured %s: payload=%d sector=%d", self.memory, self.max_payload, self.sector_size)

    # -- agent -------------------------------------------------------------

    def send_exploit(self, descriptor: ExploitDescriptor) -> Optional[int]:
        attrs = {"size_in_bytes": len(descriptor.payload), "address": hex(descriptor.load_address)}
        reply = self._raw_out("exploit", attrs, descriptor.payload)
        if "ack_code" not in reply:
            return None
        return _int(reply, "ack_code")

    def upload_agent(self, image: AgentImage) -> None:
        attrs = {
            "size_in_bytes": len(image.data),
            "address": hex(image.load_address),
            "stage": image.stage.value,
            "signature_size": len(image.signature),
        }
        self._raw_out("program_agent", attrs, image.data + image.signature)

    def jump(self, address: int) -> None:
        self._call("jump", {"address": hex(address)})

    def wait_ready(self, timeout: float) -> None:
        deadline = self.link.clock.monotonic() + timeout
        last_error = None
        while True:
            remaining = deadline - self.link.clock.monotonic()
            if remaining <= 0:
                raise HandoffTimeout(f"agent not ready after {timeout:.1f}s", command="jump") from last_error
            try:
                tag, reply = self.link.receive(remaining)
            except TransportTimeout as e:
                raise HandoffTimeout(f"agent not ready after {timeout:.1f}s", command="jump") from e
            except FrameError as e:
                # Boot noise while the agent starts.
                logger.debug("Discarding garbled frame while waiting for agent: %s", e)
                last_error = e
                continue
            if tag == "response" and reply.get("value", "").strip().upper() == "READY":
                return

    # -- auth --------------------------------------------------------------

    def request_challenge(self) -> bytes:
        reply = self._call("sig", {"TargetName": "req"})
        return bytes.fromhex(reply.get("challenge", "").strip())

    def _sig(self, target: str, blob: bytes) -> bool:
        try:
            self._raw_out("sig", {"TargetName": target, "size_in_bytes": len(blob)}, blob)
        except DeviceError as e:
            logger.warning("Signature stage %s refused: %s", target, e)
            return False
        return True

    def send_auth(self, material: AuthMaterial) -> bool:
        if material.token:
            return self._sig("sig", material.token)
        if material.digest and not self._sig("digest", material.digest):
            return False
        return self._sig("sig", material.signature)

    # -- storage -----------------------------------------------------------

    def _sector_attrs(self, lun: int, start: int, count: int) -> dict:
        return {
            "SECTOR_SIZE_IN_BYTES": self.sector_size,
            "num_partition_sectors": count,
            "physical_partition_number": lun,
            "start_sector": start,
        }

    def _read_sectors(self, lun: int, start: int, count: int) -> bytes:
        size = count * self.sector_size
        reply = self._call("read", self._sector_attrs(lun, start, count))
        if not is_true(reply, "rawmode"):
            raise FrameCorruption("device did not enter raw mode", command="read")
        data = self.link.read_raw(size, self.io_timeout(size))
        self._finish("read")
        return data

    def read_partition_table(self, lun: int = 0) -> PartitionTable:
        count = GPT_SECTORS.get(self.sector_size, 34)
        return PartitionTable("gpt", self._read_sectors(lun, 0, count), self.sector_size, lun)

    def _span(self, partition: Partition, offset: int, size: int) -> Tuple[int, int]:
        if offset % self.sector_size:
            raise ValueError(f"offset {offset} is not sector aligned")
        start = partition.start_sector + offset // partition.sector_size
        count = -(-size // self.sector_size)
        return start, count

    def read_block(self, partition: Partition, offset: int, size: int) -> bytes:
        start, count = self._span(partition, offset, size)
        return self._read_sectors(partition.lun, start, count)[:size]

    def write_block(self, partition: Partition, offset: int, data: bytes) -> None:
        start, count = self._span(partition, offset, len(data))
        padded = data + b"\x00" * (count * self.sector_size - len(data))
        attrs = self._sector_attrs(partition.lun, start, count)
        attrs["label"] = partition.name
        self._raw_out("program", attrs, padded)

    def erase(self, partition: Partition) -> bool:
        attrs = self._sector_attrs(partition.lun, partition.start_sector, partition.sector_count)
        self._call("erase", attrs, self.io_timeout(partition.size_bytes // 64))
        return True

    def patch(self, partition: Partition, patch: Patch) -> None:
        attrs = {
            "SECTOR_SIZE_IN_BYTES": partition.sector_size,
            "byte_offset": patch.byte_offset,
            "filename": "DISK",
            "physical_partition_number": patch.lun,
            "size_in_bytes": patch.size,
            "start_sector": patch.start_sector,
            "value": patch.value,
        }
        self._call("patch", attrs)

    def activate_boot_lun(self, lun: int) -> bool:
        self._call("setbootablestoragedrive", {"value": lun})
        return True
