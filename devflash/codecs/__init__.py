"""Frame codecs, one per protocol variant."""

from .base import FrameCodec, ProtocolVariant
from .binary import BinaryFramedCodec
from .hdlc import ChecksumMode, HdlcFramedCodec
from .xml_command import XmlCommandCodec

_CODECS = {
    ProtocolVariant.BINARY_FRAMED: BinaryFramedCodec,
    ProtocolVariant.XML_COMMAND: XmlCommandCodec,
    ProtocolVariant.HDLC_FRAMED: HdlcFramedCodec,
}


def get_codec(variant) -> FrameCodec:
    """Return a fresh codec for a variant (enum or its string value)."""
    if isinstance(variant, str):
        try:
            variant = ProtocolVariant(variant.lower())
        except ValueError:
            supported = ", ".join(v.value for v in _CODECS)
            raise ValueError(f"Unknown protocol variant: {variant}. Supported: {supported}")
    return _CODECS[variant]()


__all__ = [
    "BinaryFramedCodec",
    "ChecksumMode",
    "FrameCodec",
    "HdlcFramedCodec",
    "ProtocolVariant",
    "XmlCommandCodec",
    "get_codec",
]
