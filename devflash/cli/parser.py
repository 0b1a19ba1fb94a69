"""Argument parser for devflashctl."""

from __future__ import annotations

import argparse

from devflash import __version__


def _int(value: str) -> int:
    return int(value, 0)


def _add_auth(p: argparse.ArgumentParser) -> None:
    p.add_argument("--auth", choices=("none", "digest"), default="none",
                   help="Authenticate before the operation (needed for protected partitions)")
    p.add_argument("--digest", default=None, help="Digest file for --auth digest")
    p.add_argument("--signature", default=None, help="Signature file for --auth digest")


def _build_parser() -> argparse.ArgumentParser:
    """Build the full argparse parser with all subcommands."""
    parser = argparse.ArgumentParser(prog="devflashctl", description="Device flashing engine CLI")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--json", action="store_true", help="Output machine-parseable JSON")
    parser.add_argument("--config", default=None, help="Engine config YAML (default: $DEVFLASH_CONFIG)")
    parser.add_argument("--chips", default=None, help="Extra chip database YAML")
    parser.add_argument("--exploits", default=None, help="Exploit table YAML")
    parser.add_argument("--loaders", default=None, help="Loader directory with index.yaml")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("ports", help="List serial ports")
    sub.add_parser("locks", help="Show held port locks")

    p_identify = sub.add_parser("identify", help="Handshake and print chip identity")
    p_identify.add_argument("port", help="Serial port or usb:VID:PID")

    p_gpt = sub.add_parser("printgpt", help="Print the partition table")
    p_gpt.add_argument("port")
    p_gpt.add_argument("--lun", type=int, default=None)

    p_read = sub.add_parser("read", help="Dump a partition to a file")
    p_read.add_argument("port")
    p_read.add_argument("partition")
    p_read.add_argument("output")
    p_read.add_argument("--lun", type=int, default=None)
    p_read.add_argument("--limit", type=_int, default=None, help="Read at most this many bytes")
    _add_auth(p_read)

    p_write = sub.add_parser("write", help="Write an image (raw or sparse) to a partition")
    p_write.add_argument("port")
    p_write.add_argument("partition")
    p_write.add_argument("image")
    p_write.add_argument("--lun", type=int, default=None)
    _add_auth(p_write)

    p_erase = sub.add_parser("erase", help="Erase a partition")
    p_erase.add_argument("port")
    p_erase.add_argument("partition")
    p_erase.add_argument("--lun", type=int, default=None)
    _add_auth(p_erase)

    p_flash = sub.add_parser("flash", help="Flash a rawprogram/patch firmware directory")
    p_flash.add_argument("port")
    p_flash.add_argument("directory")
    _add_auth(p_flash)

    return parser
