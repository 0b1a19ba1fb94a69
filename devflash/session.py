"""
Session: one physical connection to one device.

A Session exclusively owns its transport (guarded by a cross-process
PortLock) and carries everything the engine learns about the device: the
negotiated protocol variant and command set, the chip identity, the
authentication state and the partition catalog. There is no process-wide
state; two sessions on two ports share nothing mutable.

Once invalidated (explicit close, fatal handoff error, or a disconnect after
prior traffic) the transport is released and never reused.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional

from .catalog import PartitionCatalog
from .codecs import ProtocolVariant, get_codec
from .config import EngineConfig
from .errors import AuthRejected, NotAuthorized, PortUnavailable, SessionClosed
from .implementations import RealClock
from .interfaces import ClockInterface, ProgressSink, SessionState, TransportInterface
from .link import FrameLink
from .models import AuthMaterial, ChipIdentity, Partition
from .port_lock import PortLock

logger = logging.getLogger(__name__)


class AuthState(Enum):
    NONE = "none"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Session:
    """
    Usage:
        with Session("/dev/ttyACM0", SerialTransport()) as session:
            HandshakeNegotiator(session).run()
            ...
    """

    def __init__(
        self,
        port: str,
        transport: TransportInterface,
        config: Optional[EngineConfig] = None,
        *,
        clock: Optional[ClockInterface] = None,
        sink: Optional[ProgressSink] = None,
    ):
        self.port = port
        self.transport = transport
        self.config = config or EngineConfig()
        self.clock = clock or RealClock()
        self.sink = sink
        self.catalog = PartitionCatalog(self.config)
        self.link: Optional[FrameLink] = None
        self.auth_state = AuthState.NONE
        self.invalidated_reason = ""
        self._state = SessionState.CLOSED
        self._lock = PortLock(port, self.config.lock_dir or None)
        self._exec_lock = threading.RLock()
        self._variant: Optional[ProtocolVariant] = None
        self._command_set = None
        self._identity: Optional[ChipIdentity] = None
        self._strategy = None

    # -- lifecycle ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def usable(self) -> bool:
        return self._state in (SessionState.OPEN, SessionState.READY)

    def open(self, timeout: float = 1.0) -> "Session":
        if self._state == SessionState.INVALIDATED:
            raise SessionClosed(f"session on {self.port} was invalidated: {self.invalidated_reason}")
        if self.usable:
            return self
        if not self._lock.acquire():
            owner = self._lock.get_owner()
            holder = f" by PID {owner.pid} ({owner.process_name})" if owner else ""
            raise PortUnavailable(f"{self.port} is held{holder}")
        try:
            self.transport.open(self.port, timeout)
        except PortUnavailable:
            self._lock.release()
            raise
        self.link = FrameLink(
            self.transport,
            get_codec(ProtocolVariant.BINARY_FRAMED),
            timeout=self.config.handshake_timeout,
            max_retries=self.config.frame_retries,
            clock=self.clock,
            sink=self.sink,
        )
        self._state = SessionState.OPEN
        logger.info("Session opened on %s", self.port)
        return self

    def attach(self, variant: ProtocolVariant, command_set, identity: ChipIdentity) -> None:
        """Record the outcome of a successful handshake."""
        self._require()
        self._variant = variant
        self._command_set = command_set
        self._identity = identity
        self._state = SessionState.READY

    def invalidate(self, reason: str) -> None:
        """Tear the session down for good: catalog, auth and transport all go."""
        if self._state in (SessionState.CLOSED, SessionState.INVALIDATED):
            self._state = SessionState.INVALIDATED
            self.invalidated_reason = self.invalidated_reason or reason
            return
        logger.warning("Session on %s invalidated: %s", self.port, reason)
        self.invalidated_reason = reason
        self._release()
        self._state = SessionState.INVALIDATED
        if self.sink:
            self.sink.on_log(f"session invalidated: {reason}", logging.ERROR)

    def close(self) -> None:
        if self._state in (SessionState.CLOSED, SessionState.INVALIDATED):
            return
        self._release()
        self._state = SessionState.CLOSED
        logger.info("Session on %s closed", self.port)

    def _release(self) -> None:
        self.catalog.invalidate()
        self._discard_auth()
        self._command_set = None
        try:
            self.transport.close()
        finally:
            self._lock.release()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _require(self) -> None:
        if not self.usable:
            detail = f": {self.invalidated_reason}" if self.invalidated_reason else ""
            raise SessionClosed(f"session on {self.port} is {self._state.value}{detail}",
                                chip=self._identity.name if self._identity else None)

    @contextmanager
    def exclusive(self) -> Iterator["Session"]:
        """Serialize operations; the protocol is half duplex."""
        with self._exec_lock:
            self._require()
            yield self

    # -- negotiated state ----------------------------------------------------

    @property
    def variant(self) -> Optional[ProtocolVariant]:
        return self._variant

    @property
    def chip(self) -> Optional[ChipIdentity]:
        return self._identity

    @property
    def command_set(self):
        self._require()
        if self._command_set is None:
            raise SessionClosed(f"no protocol negotiated on {self.port}")
        return self._command_set

    # -- authentication --------------------------------------------------------

    def authenticate(self, strategy, material: Optional[AuthMaterial] = None) -> AuthState:
        """Run one authentication strategy against the device.

        A rejection is recorded and re-raised but leaves the session open, so
        unprotected partitions stay usable.
        """
        with self.exclusive():
            self._strategy = strategy
            try:
                strategy.supply(self, material)
            except AuthRejected as e:
                self.auth_state = AuthState.REJECTED
                raise e.with_context(chip=self._identity.name if self._identity else None)
            self.auth_state = AuthState.ACCEPTED
            logger.info("Authenticated with %s", strategy.name)
            return self.auth_state

    @property
    def privileged(self) -> bool:
        return (
            self.auth_state == AuthState.ACCEPTED
            and self._strategy is not None
            and self._strategy.grants_privilege
        )

    def check_authorized(self, partition: Partition) -> None:
        if partition.protected and not self.privileged:
            raise NotAuthorized(
                f"partition {partition.name!r} is vendor protected (auth: {self.auth_state.value})",
                chip=self._identity.name if self._identity else None,
            )

    def _discard_auth(self) -> None:
        if self._strategy is not None:
            self._strategy.discard()
        self._strategy = None
        self.auth_state = AuthState.NONE

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "state": self._state.value,
            "variant": self._variant.value if self._variant else None,
            "chip": self._identity.to_dict() if self._identity else None,
            "auth": self.auth_state.value,
            "partitions": len(self.catalog),
        }
