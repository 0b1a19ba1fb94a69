"""
Port locking for devflash sessions.

Provides:
- portalocker-based exclusive port locks so only one session (in any
  process) drives a physical port
- Owner info next to each lock for contention messages
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, List, Optional

import portalocker

from .errors import PortUnavailable

logger = logging.getLogger(__name__)


@dataclass
class PortOwner:
    """Information about the current port owner."""
    pid: int
    process_name: str
    started: datetime
    port: str
    lock_file: str


class PortLock:
    """
    File-based port lock with contention detection.

    Usage:
        lock = PortLock("/dev/ttyACM0")
        if lock.acquire():
            # Use the port
            lock.release()
        else:
            print(f"Port in use by: {lock.get_owner()}")
    """

    LOCK_DIR = os.path.join(os.environ.get("DEVFLASH_RUN_DIR", "/tmp"), "devflash-locks")

    def __init__(self, port: str, lock_dir: Optional[str] = None):
        self._port = port
        self._lock_dir = lock_dir or self.LOCK_DIR
        self._fh: Optional[IO] = None
        self._lock_path = self._get_lock_path(port, self._lock_dir)
        self._info_path = self._lock_path + ".info"
        Path(self._lock_dir).mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _get_lock_path(port: str, lock_dir: str) -> str:
        # /dev/ttyACM0 -> <lock_dir>/dev_ttyACM0.lock
        safe_name = port.strip("/").replace("/", "_").replace("\\", "_").replace(":", "_")
        return os.path.join(lock_dir, f"{safe_name}.lock")

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self, timeout: float = 0) -> bool:
        """
        Acquire the port lock.

        Args:
            timeout: How long to wait for the lock (0 = no wait)

        Returns:
            True if lock acquired, False otherwise
        """
        if self._fh is not None:
            return True
        flags = portalocker.LOCK_EX | portalocker.LOCK_NB
        try:
            self._fh = portalocker.Lock(self._lock_path, mode="a", timeout=timeout, flags=flags).acquire()
        except portalocker.exceptions.LockException:
            owner = self.get_owner()
            if owner:
                logger.warning("Port %s locked by PID %d (%s) since %s",
                               self._port, owner.pid, owner.process_name, owner.started)
            else:
                logger.warning("Port %s locked by unknown process", self._port)
            return False
        self._write_owner_info()
        logger.debug("Acquired lock for %s", self._port)
        return True

    def release(self) -> None:
        """Release the port lock."""
        if self._fh is None:
            return
        try:
            os.unlink(self._info_path)
        except FileNotFoundError:
            pass
        portalocker.unlock(self._fh)
        self._fh.close()
        self._fh = None
        logger.debug("Released lock for %s", self._port)

    def get_owner(self) -> Optional[PortOwner]:
        """Get information about the current lock owner."""
        return _read_owner(Path(self._info_path))

    def _write_owner_info(self) -> None:
        info = {
            "pid": os.getpid(),
            "process_name": " ".join(sys.argv[:3])[:50] or f"python:{os.getpid()}",
            "started": datetime.now().isoformat(),
            "port": self._port,
        }
        # Atomic write to avoid corrupt JSON on crash.
        tmp_path = f"{self._info_path}.tmp.{os.getpid()}"
        with open(tmp_path, "w") as f:
            json.dump(info, f, indent=2)
        os.replace(tmp_path, self._info_path)

    def __enter__(self):
        if not self.acquire():
            raise PortUnavailable(f"Could not acquire lock for {self._port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def _read_owner(info_path: Path) -> Optional[PortOwner]:
    try:
        info = json.loads(info_path.read_text(encoding="utf-8"))
        return PortOwner(
            pid=int(info["pid"]),
            process_name=info["process_name"],
            started=datetime.fromisoformat(info["started"]),
            port=info["port"],
            lock_file=str(info_path)[:-len(".info")],
        )
    except (OSError, ValueError, KeyError):
        return None


def list_all_locks(lock_dir: Optional[str] = None) -> List[PortOwner]:
    """List owners of currently held port locks."""
    root = Path(lock_dir or PortLock.LOCK_DIR)
    if not root.exists():
        return []
    owners = []
    for info_file in sorted(root.glob("*.lock.info")):
        owner = _read_owner(info_file)
        if owner:
            owners.append(owner)
    return owners
