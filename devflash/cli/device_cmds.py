"""Port, identity and partition-table commands."""

from __future__ import annotations

from typing import Optional

from devflash.cli.helpers import _error, _print, _session
from devflash.engine import Engine
from devflash.errors import FlashError
from devflash.handshake import HandshakeNegotiator
from devflash.implementations import SerialTransport, open_transport
from devflash.port_lock import list_all_locks
from devflash.session import Session


def cmd_ports(*, json_mode: bool) -> int:
    """List serial ports with their USB ids."""
    ports = [
        {
            "device": p.device,
            "description": p.description,
            "vid": f"{p.vid:04X}" if p.vid is not None else None,
            "pid": f"{p.pid:04X}" if p.pid is not None else None,
        }
        for p in SerialTransport.list_ports()
    ]
    if json_mode:
        _print({"ports": ports}, json_mode=True)
    elif not ports:
        _print("No serial ports found", json_mode=False)
    else:
        for p in ports:
            ids = f"{p['vid']}:{p['pid']}" if p["vid"] else "-"
            print(f"{p['device']:<20} {ids:<10} {p['description']}")
    return 0


def cmd_locks(*, json_mode: bool) -> int:
    """Show which process holds which port."""
    owners = [
        {"port": o.port, "pid": o.pid, "process": o.process_name, "since": o.started.isoformat()}
        for o in list_all_locks()
    ]
    _print({"locks": owners}, json_mode=json_mode)
    return 0


def cmd_identify(*, engine: Engine, port: str, json_mode: bool) -> int:
    """Handshake only: report the chip and protection state without loading an agent."""
    transport = open_transport(port, flush_delay=engine.config.baud_flush_delay)
    session = Session(port, transport, engine.config, clock=engine.clock, sink=engine.sink)
    negotiator = HandshakeNegotiator(session, engine.chip_db, engine.config)
    try:
        identity = negotiator.run()
        payload = {
            "port": port,
            "variant": session.variant.value,
            "state": negotiator.state.value,
            "chip": identity.to_dict(),
        }
    except FlashError as e:
        return _error(e, json_mode=json_mode)
    finally:
        session.close()
    _print(payload, json_mode=json_mode)
    return 0


def cmd_printgpt(*, engine: Engine, port: str, lun: Optional[int], json_mode: bool) -> int:
    """Print the device partition table."""
    try:
        with _session(engine, port) as session:
            parts = session.catalog.partitions(lun)
    except FlashError as e:
        return _error(e, json_mode=json_mode)
    if json_mode:
        _print({"partitions": [p.to_dict() for p in parts]}, json_mode=True)
        return 0
    for p in parts:
        flag = "P" if p.protected else " "
        print(f"{p.lun:>3} {p.name:<24} {p.start_sector:>12} {p.sector_count:>12} {p.size_bytes:>14} {flag}")
    return 0
