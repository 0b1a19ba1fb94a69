"""Plain data types shared across the engine."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Optional, Union


class BootStage(Enum):
    """Execution context the device is currently answering from."""
    BOOT_ROM = "boot_rom"
    AGENT = "agent"


@dataclass(frozen=True)
class ProtectionState:
    """Protection flags reported at identification time."""
    secure_boot: bool = False
    sla: bool = False
    daa: bool = False
    anti_rollback: int = 0

    @property
    def rejects_unsigned_agent(self) -> bool:
        return self.secure_boot or self.daa

    @property
    def needs_auth(self) -> bool:
        return self.sla or self.daa


@dataclass(frozen=True)
class ChipIdentity:
    """Who answered the handshake."""
    hw_code: int
    name: str = "unknown"
    family: str = "unknown"
    stage: BootStage = BootStage.BOOT_ROM
    serial: str = ""
    protection: ProtectionState = field(default_factory=ProtectionState)
    checksum_supported: bool = False

    @property
    def key(self) -> str:
        """Stable identity used to bind authentication material."""
        return f"{self.hw_code:04X}:{self.serial}" if self.serial else f"{self.hw_code:04X}"

    def to_dict(self) -> dict:
        return {
            "hw_code": f"0x{self.hw_code:04X}",
            "name": self.name,
            "family": self.family,
            "stage": self.stage.value,
            "serial": self.serial,
            "secure_boot": self.protection.secure_boot,
            "sla": self.protection.sla,
            "daa": self.protection.daa,
            "anti_rollback": self.protection.anti_rollback,
        }


class AgentStage(Enum):
    FIRST = "first"
    SECOND = "second"


@dataclass
class AgentImage:
    """A download agent stage to be placed at load_address."""
    data: bytes
    load_address: int
    stage: AgentStage = AgentStage.FIRST
    name: str = ""
    signature: bytes = b""

    @property
    def signed(self) -> bool:
        return bool(self.signature)


@dataclass
class Partition:
    name: str
    lun: int
    start_sector: int
    sector_count: int
    sector_size: int = 512
    sparse: bool = False
    protected: bool = False

    @property
    def size_bytes(self) -> int:
        return self.sector_count * self.sector_size

    @property
    def end_sector(self) -> int:
        """One past the last sector."""
        return self.start_sector + self.sector_count

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "lun": self.lun,
            "start_sector": self.start_sector,
            "sector_count": self.sector_count,
            "sector_size": self.sector_size,
            "size": self.size_bytes,
            "protected": self.protected,
        }


@dataclass
class AuthMaterial:
    """Opaque authentication blobs. Never written to disk by the engine."""
    digest: bytes = b""
    signature: bytes = b""
    token: bytes = b""
    bound_to: str = ""

    def fingerprint(self) -> str:
        h = hashlib.sha256()
        for blob in (self.digest, self.signature, self.token):
            h.update(len(blob).to_bytes(4, "little"))
            h.update(blob)
        return h.hexdigest()

    def clear(self) -> None:
        self.digest = b""
        self.signature = b""
        self.token = b""


class OperationKind(Enum):
    ERASE = "erase"
    WRITE = "write"
    READ = "read"


# Within one start sector: erase before write before read.
KIND_RANK = {OperationKind.ERASE: 0, OperationKind.WRITE: 1, OperationKind.READ: 2}


@dataclass
class ProgressState:
    done: int = 0
    total: int = 0
    cancelled: bool = False


DataRef = Union[str, bytes, BinaryIO, None]


@dataclass
class Operation:
    """One read, write or erase against a partition.

    For reads ``data`` is the destination (path or writable stream), for
    writes the source (path, bytes, or readable stream).
    """
    kind: OperationKind
    partition: Partition
    data: DataRef = None
    byte_limit: Optional[int] = None
    # Bytes to skip at the start of a path source.
    source_offset: int = 0
    progress: ProgressState = field(default_factory=ProgressState)


@dataclass
class Patch:
    """Post-write fixup of ``size`` bytes at start_sector * sector_size + byte_offset."""
    lun: int
    start_sector: int
    byte_offset: int
    size: int
    value: Any
    partition_name: str = ""


@dataclass(frozen=True)
class ExploitDescriptor:
    """A chip-scoped payload that bypasses signature checks."""
    chip: str
    name: str
    payload: bytes
    target_stage: BootStage = BootStage.BOOT_ROM
    ack_code: int = 0xA1A2A3A4
    load_address: int = 0


class OutcomeStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class OperationOutcome:
    operation: Operation
    status: OutcomeStatus
    bytes_done: int = 0
    error: Optional[BaseException] = None
    # In-memory read result when no destination was given.
    data: Optional[bytes] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "kind": self.operation.kind.value,
            "partition": self.operation.partition.name,
            "lun": self.operation.partition.lun,
            "status": self.status.value,
            "bytes": self.bytes_done,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class BatchResult:
    outcomes: list = field(default_factory=list)
    applied_patches: list = field(default_factory=list)
    skipped_patches: list = field(default_factory=list)
    boot_lun_activated: Optional[int] = None

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def by_status(self, status: OutcomeStatus) -> list:
        return [o for o in self.outcomes if o.status == status]

    @property
    def completed(self) -> list:
        return self.by_status(OutcomeStatus.COMPLETED)

    @property
    def failed(self) -> list:
        return self.by_status(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> list:
        return self.by_status(OutcomeStatus.SKIPPED)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "patches_applied": len(self.applied_patches),
            "patches_skipped": len(self.skipped_patches),
            "boot_lun": self.boot_lun_activated,
        }
