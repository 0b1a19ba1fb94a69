"""Shared fixtures for the devflash test suite."""

from __future__ import annotations

import pytest

from devflash.config import EngineConfig
from devflash.mocks import MockClock, RecordingSink
from devflash.port_lock import PortLock


@pytest.fixture(autouse=True)
def isolate_lock_dir(tmp_path, monkeypatch):
    """Redirect lock dir to tmp_path for every test."""
    lock_dir = str(tmp_path / "devflash-locks")
    monkeypatch.setattr(PortLock, "LOCK_DIR", lock_dir)
    return lock_dir


@pytest.fixture
def config():
    # Small blocks keep simulated transfers short.
    return EngineConfig(io_block_size=4096, agent_chunk_size=256)


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def sink():
    return RecordingSink()
