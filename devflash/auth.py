"""
Authentication strategies.

A strategy proves to the device that the host may perform privileged
operations. The session asks the strategy for a MaterialRequest (what the
caller has to provide), then hands the material back through supply().

Implementations:
- NoAuth: always accepted, grants no vendor privilege
- DigestSignaturePair: caller-supplied digest + signature, bound to one chip
- CloudIssuedToken: opaque request for an out-of-band signer, accepted once
  the signer's token is supplied
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Set, Tuple

from .errors import AuthRejected
from .models import AuthMaterial

logger = logging.getLogger(__name__)


@dataclass
class MaterialRequest:
    """What the caller must supply to complete authentication."""
    strategy: str
    identity: str = ""
    needs: Tuple[str, ...] = ()
    challenge: bytes = b""
    request: str = ""  # base64 blob for an out-of-band signer
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "identity": self.identity,
            "needs": list(self.needs),
            "challenge": self.challenge.hex(),
            "request": self.request,
        }


class AuthStrategy(ABC):
    """Base class for authentication strategies."""

    name = ""
    # Whether acceptance unlocks vendor-protected partitions.
    grants_privilege = True

    @abstractmethod
    def challenge(self, session) -> MaterialRequest:
        pass

    @abstractmethod
    def supply(self, session, material: Optional[AuthMaterial] = None) -> bool:
        """Present material; True when accepted, AuthRejected otherwise."""
        pass

    def discard(self) -> None:
        """Forget any material held. Called when the session ends."""


def _chip_key(session) -> str:
    chip = session.chip
    return chip.key if chip else ""


class NoAuth(AuthStrategy):
    name = "none"
    grants_privilege = False

    def challenge(self, session) -> MaterialRequest:
        return MaterialRequest(self.name, _chip_key(session))

    def supply(self, session, material: Optional[AuthMaterial] = None) -> bool:
        return True


class DigestSignaturePair(AuthStrategy):
    """
    Digest + signature produced for one specific device instance.

    Material is checked against the current chip identity before anything
    goes out, and a pair the device refused once is never presented again.
    """

    name = "digest"

    def __init__(self, material: Optional[AuthMaterial] = None):
        self._material = material
        self._rejected: Set[str] = set()

    def challenge(self, session) -> MaterialRequest:
        return MaterialRequest(self.name, _chip_key(session), needs=("digest", "signature"))

    def supply(self, session, material: Optional[AuthMaterial] = None) -> bool:
        material = material or self._material
        if material is None or not material.digest or not material.signature:
            raise ValueError("digest and signature are both required")
        key = _chip_key(session)
        if material.bound_to and material.bound_to != key:
            raise AuthRejected(f"material is bound to {material.bound_to}, device is {key}")
        fingerprint = material.fingerprint()
        if fingerprint in self._rejected:
            raise AuthRejected("this digest/signature pair was already rejected; not resending")
        if not session.command_set.send_auth(material):
            self._rejected.add(fingerprint)
            raise AuthRejected("device rejected digest/signature pair")
        self._material = material
        return True

    def discard(self) -> None:
        if self._material is not None:
            self._material.clear()
        self._material = None


class CloudIssuedToken(AuthStrategy):
    """
    Token from an out-of-band signer.

    challenge() reads the device challenge and wraps it with the chip identity
    into a base64 request; the caller forwards that to the signer and passes
    the returned token to supply().
    """

    name = "token"

    def __init__(self):
        self._request: Optional[str] = None
        self._token: Optional[AuthMaterial] = None

    @property
    def outstanding(self) -> Optional[str]:
        return self._request

    def challenge(self, session) -> MaterialRequest:
        chip = session.chip
        device_challenge = session.command_set.request_challenge()
        body = {
            "hw_code": f"0x{chip.hw_code:04X}" if chip else None,
            "chip": chip.name if chip else None,
            "serial": chip.serial if chip else None,
            "anti_rollback": chip.protection.anti_rollback if chip else None,
            "challenge": device_challenge.hex(),
            "nonce": secrets.token_hex(8),
        }
        self._request = base64.b64encode(json.dumps(body, sort_keys=True).encode("utf-8")).decode("ascii")
        logger.debug("Token request issued for %s", _chip_key(session))
        return MaterialRequest(
            self.name, _chip_key(session), needs=("token",), challenge=device_challenge, request=self._request,
        )

    def supply(self, session, material: Optional[AuthMaterial] = None) -> bool:
        if self._request is None:
            raise ValueError("no outstanding token request; call challenge() first")
        if material is None or not material.token:
            raise ValueError("signer token is required")
        material.bound_to = material.bound_to or _chip_key(session)
        request, self._request = self._request, None
        if not session.command_set.send_auth(material):
            material.clear()
            raise AuthRejected("device rejected signer token")
        logger.debug("Token accepted for request %s...", request[:16])
        self._token = material
        return True

    def discard(self) -> None:
        if self._token is not None:
            self._token.clear()
        self._token = None
        self._request = None


_STRATEGIES = {
    NoAuth.name: NoAuth,
    DigestSignaturePair.name: DigestSignaturePair,
    CloudIssuedToken.name: CloudIssuedToken,
}


def get_strategy(name: str) -> AuthStrategy:
    """Return a new strategy instance by name."""
    try:
        return _STRATEGIES[name.lower()]()
    except KeyError:
        supported = ", ".join(_STRATEGIES)
        raise ValueError(f"Unknown auth strategy: {name}. Supported: {supported}")
