"""Per-variant command sets."""

from ..codecs.base import ProtocolVariant
from .base import CommandSet, PartitionTable
from .binary import BinaryCommandSet
from .hdlc import HdlcCommandSet
from .xml_command import XmlCommandSet

_COMMAND_SETS = {
    ProtocolVariant.BINARY_FRAMED: BinaryCommandSet,
    ProtocolVariant.XML_COMMAND: XmlCommandSet,
    ProtocolVariant.HDLC_FRAMED: HdlcCommandSet,
}


def get_command_set(variant: ProtocolVariant) -> type:
    """Return the CommandSet class for a protocol variant."""
    try:
        return _COMMAND_SETS[variant]
    except KeyError:
        supported = ", ".join(v.value for v in _COMMAND_SETS)
        raise ValueError(f"Unknown protocol variant: {variant}. Supported: {supported}")


__all__ = [
    "BinaryCommandSet",
    "CommandSet",
    "HdlcCommandSet",
    "PartitionTable",
    "XmlCommandSet",
    "get_command_set",
]
