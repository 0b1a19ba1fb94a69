"""Shared utilities for devflashctl commands."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from devflash.auth import get_strategy
from devflash.chip_db import ChipDatabase
from devflash.config import load_config
from devflash.engine import Engine
from devflash.errors import FlashError
from devflash.exploits import ExploitTable
from devflash.implementations import LoggingSink
from devflash.loaders import LocalLoaderRepository
from devflash.models import AuthMaterial
from devflash.session import Session

logger = logging.getLogger(__name__)


def _print(obj: Any, *, json_mode: bool) -> None:
    if json_mode:
        print(json.dumps(obj, indent=2, sort_keys=True))
    else:
        if isinstance(obj, str):
            print(obj)
        else:
            print(json.dumps(obj, indent=2, sort_keys=True))


def _error(err: Exception, *, json_mode: bool) -> int:
    _print({"error": str(err), "type": type(err).__name__, "success": False}, json_mode=json_mode)
    return 1


def _build_engine(
    *,
    config: Optional[str] = None,
    chips: Optional[str] = None,
    exploits: Optional[str] = None,
    loaders: Optional[str] = None,
) -> Engine:
    return Engine(
        load_config(config),
        chip_db=ChipDatabase.from_yaml(chips) if chips else None,
        exploits=ExploitTable.from_yaml(exploits) if exploits else None,
        loaders=LocalLoaderRepository(loaders) if loaders else None,
        sink=LoggingSink(),
    )


def _read_file(path: Optional[str]) -> bytes:
    if not path:
        return b""
    with open(path, "rb") as f:
        return f.read()


def _auth_material(digest: Optional[str], signature: Optional[str]) -> Optional[AuthMaterial]:
    if not digest and not signature:
        return None
    return AuthMaterial(digest=_read_file(digest), signature=_read_file(signature))


@contextmanager
def _session(engine: Engine, port: str, *, auth: str = "none", digest: Optional[str] = None,
             signature: Optional[str] = None) -> Iterator[Session]:
    """Connected session, authenticated with the requested strategy; closed on exit."""
    material = _auth_material(digest, signature)
    session = engine.connect(port)
    try:
        if auth != "none" and not session.privileged:
            strategy = get_strategy(auth)
            try:
                session.authenticate(strategy, material)
            except FlashError as e:
                # Unprotected partitions stay usable.
                logger.warning("Authentication failed: %s", e)
        yield session
    finally:
        session.close()
