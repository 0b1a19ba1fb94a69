"""Partition read/write/erase and firmware flashing commands."""

from __future__ import annotations

import time
from typing import Optional

from devflash.cli.helpers import _error, _print, _session
from devflash.engine import Engine
from devflash.errors import FlashError, PartitionNotFound
from devflash.executor import CancelToken
from devflash.firmware import RawprogramReader
from devflash.models import OperationOutcome


def _outcome_payload(outcome: OperationOutcome, started: float) -> dict:
    payload = outcome.to_dict()
    payload["success"] = outcome.ok
    payload["duration_ms"] = int((time.time() - started) * 1000)
    return payload


def _single(engine: Engine, *, port: str, partition: str, lun: Optional[int], json_mode: bool,
            auth: str, digest: Optional[str], signature: Optional[str], action) -> int:
    started = time.time()
    cancel = CancelToken()
    try:
        with _session(engine, port, auth=auth, digest=digest, signature=signature) as session:
            part = session.catalog.find(partition, lun)
            try:
                outcome = action(engine.executor(session, cancel), part)
            except KeyboardInterrupt:
                cancel.cancel()
                raise
    except PartitionNotFound as e:
        _error(e, json_mode=json_mode)
        return 2
    except FlashError as e:
        return _error(e, json_mode=json_mode)
    _print(_outcome_payload(outcome, started), json_mode=json_mode)
    return 0 if outcome.ok else 1


def cmd_read(*, engine: Engine, port: str, partition: str, output: str, lun: Optional[int],
             limit: Optional[int], auth: str = "none", digest: Optional[str] = None,
             signature: Optional[str] = None, json_mode: bool) -> int:
    """Dump a partition to a file."""
    return _single(engine, port=port, partition=partition, lun=lun, json_mode=json_mode,
                   auth=auth, digest=digest, signature=signature,
                   action=lambda ex, part: ex.read(part, output, limit))


def cmd_write(*, engine: Engine, port: str, partition: str, image: str, lun: Optional[int],
              auth: str = "none", digest: Optional[str] = None, signature: Optional[str] = None,
              json_mode: bool) -> int:
    """Write a raw or sparse image to a partition."""
    return _single(engine, port=port, partition=partition, lun=lun, json_mode=json_mode,
                   auth=auth, digest=digest, signature=signature,
                   action=lambda ex, part: ex.write(part, image))


def cmd_erase(*, engine: Engine, port: str, partition: str, lun: Optional[int],
              auth: str = "none", digest: Optional[str] = None, signature: Optional[str] = None,
              json_mode: bool) -> int:
    """Erase a partition."""
    return _single(engine, port=port, partition=partition, lun=lun, json_mode=json_mode,
                   auth=auth, digest=digest, signature=signature,
                   action=lambda ex, part: ex.erase(part))


def cmd_flash(*, engine: Engine, port: str, directory: str, auth: str = "none",
              digest: Optional[str] = None, signature: Optional[str] = None, json_mode: bool) -> int:
    """Flash a rawprogram/patch firmware directory."""
    started = time.time()
    try:
        reader = RawprogramReader(directory)
    except (OSError, ValueError) as e:
        _print({"error": str(e), "success": False}, json_mode=json_mode)
        return 2
    try:
        with _session(engine, port, auth=auth, digest=digest, signature=signature) as session:
            result = engine.flash(session, reader)
    except FlashError as e:
        return _error(e, json_mode=json_mode)
    payload = result.to_dict()
    payload["success"] = result.ok
    payload["duration_ms"] = int((time.time() - started) * 1000)
    _print(payload, json_mode=json_mode)
    return 0 if result.ok else 1
