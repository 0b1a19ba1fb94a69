"""
Loader repository: where agent images for a chip come from.

The engine only needs ``fetch(identity) -> LoaderBundle``. LocalLoaderRepository
reads a directory with an ``index.yaml``::

    loaders:
      - chip: MT6765            # name, or hw_code: 0x0766
        images:
          - file: mt6765_da1.bin
            address: 0x200000
            stage: first
            signature: mt6765_da1.sig   # optional
          - file: mt6765_da2.bin
            address: 0x40000000
            stage: second
        auth:                   # optional
          digest: auth.dgst
          signature: auth.sig
          bound_to: "0766:0a1b2c3d"   # ChipIdentity.key the pair was signed for

Paths are relative to the index file.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

from .models import AgentImage, AgentStage, AuthMaterial, ChipIdentity

logger = logging.getLogger(__name__)

INDEX_NAME = "index.yaml"


@dataclass
class LoaderBundle:
    images: List[AgentImage] = field(default_factory=list)
    material: Optional[AuthMaterial] = None


class LoaderRepository(ABC):
    """
    Abstract source of agent images.

    Implementations:
    - LocalLoaderRepository: a directory with an index.yaml
    """

    @abstractmethod
    def fetch(self, identity: ChipIdentity) -> Optional[LoaderBundle]:
        """Images (and optional auth material) for a chip, or None if unknown."""
        pass


class LocalLoaderRepository(LoaderRepository):

    def __init__(self, directory: str):
        self.directory = os.path.abspath(directory)
        index_path = os.path.join(self.directory, INDEX_NAME)
        with open(index_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        self._entries = data.get("loaders", [])
        if not isinstance(self._entries, list):
            raise ValueError(f"{index_path}: 'loaders' must be a list")
        logger.debug("Loader index %s: %d entries", index_path, len(self._entries))

    def _matches(self, entry: dict, identity: ChipIdentity) -> bool:
        if "hw_code" in entry:
            code = entry["hw_code"]
            if (int(code, 0) if isinstance(code, str) else int(code)) == identity.hw_code:
                return True
        return str(entry.get("chip", "")).upper() == identity.name.upper()

    def _read(self, name: Optional[str]) -> bytes:
        if not name:
            return b""
        with open(os.path.join(self.directory, name), "rb") as f:
            return f.read()

    def fetch(self, identity: ChipIdentity) -> Optional[LoaderBundle]:
        for entry in self._entries:
            if self._matches(entry, identity):
                return self._bundle(entry, identity)
        logger.info("No loader for %s (0x%04X) in %s", identity.name, identity.hw_code, self.directory)
        return None

    def _bundle(self, entry: dict, identity: ChipIdentity) -> LoaderBundle:
        images = []
        for item in entry.get("images", []):
            try:
                filename = item["file"]
                address = item["address"]
            except KeyError as e:
                raise ValueError(f"loader image {item!r} is missing {e}") from e
            images.append(AgentImage(
                data=self._read(filename),
                load_address=int(address, 0) if isinstance(address, str) else int(address),
                stage=AgentStage(item.get("stage", AgentStage.FIRST.value)),
                name=filename,
                signature=self._read(item.get("signature")),
            ))
        material = None
        auth = entry.get("auth")
        if auth:
            material = AuthMaterial(
                digest=self._read(auth.get("digest")),
                signature=self._read(auth.get("signature")),
                token=self._read(auth.get("token")),
                bound_to=str(auth.get("bound_to", "")),
            )
        return LoaderBundle(images, material)
