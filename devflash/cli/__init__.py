"""
devflashctl: command line front-end for the devflash engine.

Design goals:
- Small, stable surface: one subcommand per engine operation
- Optional JSON output for reliable parsing
- Exit codes: 0 success, 1 operation failed, 2 bad input

Main commands:
- ports / locks: what is attached, who holds it
- identify: handshake only
- printgpt: partition table
- read / write / erase: single partition operations
- flash: rawprogram/patch firmware directory
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from devflash.cli.device_cmds import cmd_identify, cmd_locks, cmd_ports, cmd_printgpt
from devflash.cli.helpers import _build_engine, _print
from devflash.cli.io_cmds import cmd_erase, cmd_flash, cmd_read, cmd_write
from devflash.cli.parser import _build_parser


def _setup_logging(verbose: int) -> None:
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: Optional[list] = None) -> int:
    """Entry point for the ``devflashctl`` CLI.

    Args:
        argv: Argument list to parse.  Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code: 0 on success, non-zero on error.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.cmd == "ports":
        return cmd_ports(json_mode=args.json)
    if args.cmd == "locks":
        return cmd_locks(json_mode=args.json)

    try:
        engine = _build_engine(config=args.config, chips=args.chips, exploits=args.exploits, loaders=args.loaders)
    except (OSError, ValueError) as e:
        _print({"error": str(e), "success": False}, json_mode=args.json)
        return 2

    if args.cmd == "identify":
        return cmd_identify(engine=engine, port=args.port, json_mode=args.json)
    if args.cmd == "printgpt":
        return cmd_printgpt(engine=engine, port=args.port, lun=args.lun, json_mode=args.json)

    auth = {"auth": args.auth, "digest": args.digest, "signature": args.signature}
    if args.cmd == "read":
        return cmd_read(engine=engine, port=args.port, partition=args.partition, output=args.output,
                        lun=args.lun, limit=args.limit, json_mode=args.json, **auth)
    if args.cmd == "write":
        return cmd_write(engine=engine, port=args.port, partition=args.partition, image=args.image,
                         lun=args.lun, json_mode=args.json, **auth)
    if args.cmd == "erase":
        return cmd_erase(engine=engine, port=args.port, partition=args.partition, lun=args.lun,
                         json_mode=args.json, **auth)
    if args.cmd == "flash":
        return cmd_flash(engine=engine, port=args.port, directory=args.directory, json_mode=args.json, **auth)

    parser.print_help()
    return 2


__all__ = [
    "cmd_erase",
    "cmd_flash",
    "cmd_identify",
    "cmd_locks",
    "cmd_ports",
    "cmd_printgpt",
    "cmd_read",
    "cmd_write",
    "main",
]
