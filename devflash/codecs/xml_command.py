"""XML command documents.

Every command and response is one ``<data>`` document whose first child is
the command element; its attributes are the payload::

    <?xml version="1.0" ?><data><read physical_partition_number="0" ... /></data>

Raw data phases (``rawmode="true"``) are not framed and bypass this codec.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Dict, Optional, Tuple

from ..errors import FrameCorruption, IncompleteFrame
from .base import FrameCodec, ProtocolVariant

XML_DECL = b'<?xml version="1.0" ?>'
END_TAG = b"</data>"
MAX_DOCUMENT = 64 * 1024


class XmlCommandCodec(FrameCodec):
    variant = ProtocolVariant.XML_COMMAND
    max_frame_size = MAX_DOCUMENT

    def encode(self, command: str, payload: Optional[Dict[str, object]] = None) -> bytes:
        root = ET.Element("data")
        attrs = {k: _attr(v) for k, v in (payload or {}).items()}
        ET.SubElement(root, command, attrs)
        return XML_DECL + ET.tostring(root)

    def decode(self, frame: bytes) -> Tuple[str, Dict[str, str]]:
        text = bytes(frame).strip()
        if END_TAG not in text and not text.endswith(b"/>"):
            raise IncompleteFrame("document has no closing </data>")
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise FrameCorruption(f"malformed XML: {e}") from e
        if root.tag != "data":
            raise FrameCorruption(f"unexpected root element <{root.tag}>")
        children = list(root)
        if not children:
            raise FrameCorruption("empty <data> document")
        child = children[0]
        return child.tag, dict(child.attrib)

    def split(self, buffer: bytearray) -> Optional[bytes]:
        end = buffer.find(END_TAG)
        if end < 0:
            if len(buffer) > MAX_DOCUMENT:
                raise FrameCorruption(f"no document terminator in {len(buffer)} bytes")
            return None
        end += len(END_TAG)
        head = bytes(buffer[:end])
        start = head.find(b"<?xml")
        if start < 0:
            start = head.find(b"<data")
        if start < 0:
            # Terminator without an opening; discard and keep scanning.
            del buffer[:end]
            return self.split(buffer)
        del buffer[:end]
        return head[start:]


def _attr(value: object) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def is_ack(attrs: Dict[str, str]) -> bool:
    return attrs.get("value", "").strip().upper() == "ACK"


def is_true(attrs: Dict[str, str], name: str) -> bool:
    return attrs.get(name, "").strip().lower() in ("1", "true", "yes")
