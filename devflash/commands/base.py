"""Command-set contract.

A command set is the per-variant vocabulary the engine speaks over a
FrameLink: identification, agent upload, authentication and storage I/O.
Handshake, agent loading and the executor only ever talk to this interface.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from ..chip_db import ChipDatabase
from ..codecs.base import ProtocolVariant
from ..config import EngineConfig
from ..link import FrameLink
from ..models import AgentImage, AuthMaterial, BootStage, ChipIdentity, ExploitDescriptor, OperationKind, Partition, Patch

logger = logging.getLogger(__name__)


@dataclass
class PartitionTable:
    """Serialized table as returned by the device."""
    format: str  # "gpt" or "sprd"
    data: bytes
    sector_size: int = 512
    lun: int = 0


class CommandSet(ABC):
    """Base class for BinaryCommandSet, XmlCommandSet and HdlcCommandSet."""

    variant: ProtocolVariant
    # Whether write_block accepts arbitrary offsets (False: strictly sequential).
    random_access = True
    supports_patches = True

    def __init__(self, link: FrameLink, config: Optional[EngineConfig] = None, chip_db: Optional[ChipDatabase] = None):
        self.link = link
        self.config = config or EngineConfig()
        self.chip_db = chip_db or ChipDatabase()
        self.identity: Optional[ChipIdentity] = None
        # Execution context the device answers from; moves to AGENT on handoff.
        self.stage = BootStage.BOOT_ROM
        self.sector_size = 512

    def log_filter(self, command: Any, payload: Any) -> Optional[str]:
        """Return text for device log frames so the link can skip them."""
        return None

    @property
    def max_block_size(self) -> int:
        return self.config.io_block_size

    def io_timeout(self, nbytes: int) -> float:
        return self.config.io_timeout(nbytes)

    # -- identification ----------------------------------------------------

    @abstractmethod
    def probe_identity(self, timeout: float) -> ChipIdentity:
        """Single identification attempt; raises TransportTimeout or FrameError."""

    def enable_checksum(self) -> bool:
        """Turn on frame checksums if the variant supports them."""
        return False

    def prepare(self) -> None:
        """Called once the session reaches Ready."""

    def switch_baud(self, rate: int) -> bool:
        """Move the link to a new line rate. False if the variant cannot."""
        return False

    # -- agent -------------------------------------------------------------

    @abstractmethod
    def send_exploit(self, descriptor: ExploitDescriptor) -> Optional[int]:
        """Send an exploit payload; return the device's acknowledgement code."""

    @abstractmethod
    def upload_agent(self, image: AgentImage) -> None:
        pass

    @abstractmethod
    def jump(self, address: int) -> None:
        pass

    @abstractmethod
    def wait_ready(self, timeout: float) -> None:
        """Block until the uploaded agent signals readiness (HandoffTimeout otherwise)."""

    def after_handoff(self, image: AgentImage) -> None:
        """Adjust framing once code at image.load_address is running."""
        self.stage = BootStage.AGENT

    # -- auth --------------------------------------------------------------

    def request_challenge(self) -> bytes:
        return b""

    @abstractmethod
    def send_auth(self, material: AuthMaterial) -> bool:
        """Present material to the device; True if accepted."""

    # -- storage -----------------------------------------------------------

    @abstractmethod
    def read_partition_table(self, lun: int = 0) -> PartitionTable:
        pass

    def begin_transfer(self, partition: Partition, kind: OperationKind, total: int) -> None:
        pass

    def end_transfer(self, partition: Partition, kind: OperationKind) -> None:
        pass

    @abstractmethod
    def read_block(self, partition: Partition, offset: int, size: int) -> bytes:
        pass

    @abstractmethod
    def write_block(self, partition: Partition, offset: int, data: bytes) -> None:
        pass

    def erase(self, partition: Partition) -> bool:
        """Protocol erase. False when the variant has none."""
        return False

    def patch(self, partition: Partition, patch: Patch) -> None:
        raise NotImplementedError(f"{self.variant.value} has no patch command")

    def activate_boot_lun(self, lun: int) -> bool:
        return False


def patch_bytes(patch: Patch) -> bytes:
    """Little-endian bytes for a numeric patch value."""
    value = patch.value
    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
    elif isinstance(value, str):
        # Raises ValueError for expressions only the device can evaluate.
        data = int(value.strip().rstrip("."), 0).to_bytes(patch.size, "little")
    else:
        data = int(value).to_bytes(patch.size, "little")
    if len(data) != patch.size:
        raise ValueError(f"patch value is {len(data)} bytes, expected {patch.size}")
    return data
