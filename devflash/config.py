"""Engine configuration.

Defaults live on :class:`EngineConfig`; a YAML file can override any field::

    handshake_timeout: 0.3
    hdlc_fast_baud: 921600
    protected_partitions: [persist, "modemst*", frp]

The file is named explicitly or through ``DEVFLASH_CONFIG``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV = "DEVFLASH_CONFIG"

MIB = 1024 * 1024

DEFAULT_PROTECTED = (
    "persist",
    "modemst1",
    "modemst2",
    "fsg",
    "fsc",
    "frp",
    "devinfo",
    "nvdata",
    "nvram",
    "proinfo",
    "protect1",
    "protect2",
    "l_fixnv*",
    "l_runtimenv*",
)


@dataclass
class EngineConfig:
    """Tunable timeouts, retry bounds and storage policy."""

    # Handshake
    handshake_timeout: float = 0.5
    handshake_cycles: int = 3
    binary_attempts: int = 2
    hdlc_baud_rates: tuple = (115200, 921600)
    hdlc_fast_baud: int = 0
    baud_grace_window: float = 1.0
    baud_flush_delay: float = 0.1
    hdlc_usb_ids: tuple = ((0x1782, 0x4D00),)

    # Framing
    frame_retries: int = 3
    io_timeout_base: float = 2.0
    io_timeout_per_mib: float = 1.0

    # Agent
    transfer_retries: int = 2
    handoff_timeout: float = 5.0
    agent_chunk_size: int = 0x1000

    # Storage
    io_block_size: int = MIB
    max_gpt_entries: int = 1024
    luns: tuple = (0,)
    boot_lun: int = 1
    protected_partitions: tuple = DEFAULT_PROTECTED

    # Port locks; empty means PortLock.LOCK_DIR (under $DEVFLASH_RUN_DIR)
    lock_dir: str = ""

    def io_timeout(self, nbytes: int) -> float:
        """Timeout for a transfer of nbytes; grows with block size."""
        return self.io_timeout_base + self.io_timeout_per_mib * (nbytes / MIB)

    def replace(self, **changes: Any) -> "EngineConfig":
        return dataclasses.replace(self, **changes)


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, tuple):
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"config field '{name}' must be a list")
        return tuple(tuple(v) if isinstance(v, list) else v for v in value)
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int) and not isinstance(default, bool):
        return int(value, 0) if isinstance(value, str) else int(value)
    if isinstance(default, float):
        return float(value)
    return value


def config_from_dict(data: dict, base: Optional[EngineConfig] = None) -> EngineConfig:
    """Build a config from a mapping, rejecting unknown keys."""
    base = base or EngineConfig()
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config field(s): {', '.join(unknown)}")
    changes = {k: _coerce(k, v, getattr(base, k)) for k, v in data.items()}
    return base.replace(**changes)


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load configuration from path, $DEVFLASH_CONFIG, or defaults."""
    path = path or os.environ.get(CONFIG_ENV)
    if not path:
        return EngineConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    logger.debug("Loaded engine config from %s", path)
    return config_from_dict(data)
