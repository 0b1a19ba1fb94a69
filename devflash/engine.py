"""
Engine: top-level orchestration.

connect() takes a port from closed to a Ready session: open and lock the
port, negotiate the protocol, load an agent when the device is still in its
boot ROM, and read the partition catalog. The shared lookup tables (chip
database, exploit table, loader repository) are read-only and may be used
by any number of sessions on different ports at once.
"""

from __future__ import annotations

import logging
from typing import Optional

from .agent_loader import AgentLoader
from .auth import AuthStrategy, DigestSignaturePair
from .chip_db import ChipDatabase
from .config import EngineConfig
from .errors import Desynchronized, FlashError
from .executor import CancelToken, IOExecutor
from .exploits import ExploitTable
from .firmware import FirmwareImageReader
from .handshake import HandshakeNegotiator
from .implementations import RealClock, open_transport
from .interfaces import ClockInterface, HandshakeState, ProgressSink, SessionState, TransportInterface
from .loaders import LoaderRepository
from .models import AuthMaterial, BatchResult
from .session import Session

logger = logging.getLogger(__name__)


class Engine:
    """Creates sessions and drives them to Ready."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        chip_db: Optional[ChipDatabase] = None,
        exploits: Optional[ExploitTable] = None,
        loaders: Optional[LoaderRepository] = None,
        sink: Optional[ProgressSink] = None,
        clock: Optional[ClockInterface] = None,
    ):
        self.config = config or EngineConfig()
        self.chip_db = chip_db or ChipDatabase()
        self.exploits = exploits or ExploitTable()
        self.loaders = loaders
        self.sink = sink
        self.clock = clock or RealClock()

    def connect(
        self,
        port: str,
        transport: Optional[TransportInterface] = None,
        *,
        strategy: Optional[AuthStrategy] = None,
        material: Optional[AuthMaterial] = None,
        read_catalog: bool = True,
    ) -> Session:
        """Open port and bring the device up to an agent-backed Ready session."""
        if transport is None:
            transport = open_transport(
                port,
                baud=self.config.hdlc_baud_rates[0] if self.config.hdlc_baud_rates else 115200,
                flush_delay=self.config.baud_flush_delay,
            )
        session = Session(port, transport, self.config, clock=self.clock, sink=self.sink)
        session.open()
        try:
            self._bring_up(session, strategy, material)
            if read_catalog:
                session.catalog.refresh(session.command_set, self.config.luns)
        except FlashError:
            if session.state != SessionState.INVALIDATED:
                session.close()
            raise
        return session

    def _bring_up(self, session: Session, strategy, material) -> None:
        negotiator = HandshakeNegotiator(session, self.chip_db, self.config)
        try:
            negotiator.run()
            if negotiator.state == HandshakeState.AGENT_REQUIRED:
                self._load_agent(session, negotiator, strategy, material)
        except Desynchronized as e:
            # The agent is already running; restart in its context.
            logger.warning("%s; restarting handshake", e)
            session.link.drain()
            negotiator.resync()

    def _load_agent(self, session: Session, negotiator: HandshakeNegotiator, strategy, material) -> None:
        identity = session.chip
        bundle = self.loaders.fetch(identity) if self.loaders else None
        if bundle is None or not bundle.images:
            raise FlashError(f"{identity.name} is in its boot ROM and no agent is available", chip=identity.name)
        material = material or bundle.material
        if material is not None and strategy is None:
            strategy = DigestSignaturePair()
        AgentLoader(session, negotiator, self.exploits).load(bundle.images, material=material, strategy=strategy)

    def authenticate(self, session: Session, strategy: AuthStrategy, material: Optional[AuthMaterial] = None):
        return session.authenticate(strategy, material)

    def executor(self, session: Session, cancel: Optional[CancelToken] = None) -> IOExecutor:
        return IOExecutor(session, self.sink, cancel)

    def flash(self, session: Session, reader: FirmwareImageReader,
              cancel: Optional[CancelToken] = None) -> BatchResult:
        """Write every image of a firmware layout, then its patches."""
        ops = reader.operations(session.catalog)
        logger.info("Flashing %d image(s) with %d patch(es)", len(ops), len(reader.patches()))
        return self.executor(session, cancel).batch(ops, reader.patches())
