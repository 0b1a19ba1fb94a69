"""
Handshake negotiation.

State machine:

    Idle -> PortOpened -> IdentitySent -> (IdentityAck | IdentityTimeout)
         -> VariantSelected -> (AgentRequired | Ready)

On IdentityTimeout the negotiator moves on to the next protocol variant in a
fixed preference order (binary framing twice, then XML). HDLC ports are
recognised from their USB ids and skip negotiation: the attempts cycle
through the configured baud rates instead. A bounded number of full cycles
without an answer raises HandshakeExhausted.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .chip_db import SPREADTRUM, ChipDatabase
from .codecs import ProtocolVariant, get_codec
from .commands import get_command_set
from .config import EngineConfig
from .errors import DeviceDisconnected, DeviceError, FrameError, HandshakeExhausted, TransportTimeout
from .interfaces import HandshakeState, PortInfo
from .models import BootStage, ChipIdentity

logger = logging.getLogger(__name__)

Attempt = Tuple[ProtocolVariant, Optional[int]]


class HandshakeNegotiator:
    """Drives identification and protocol selection for one session."""

    def __init__(self, session, chip_db: Optional[ChipDatabase] = None, config: Optional[EngineConfig] = None):
        self.session = session
        self.config = config or session.config
        self.chip_db = chip_db or ChipDatabase()
        self.state = HandshakeState.IDLE
        self.history: List[HandshakeState] = [HandshakeState.IDLE]

    def _enter(self, state: HandshakeState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Handshake -> %s", state.value)

    def _is_hdlc_port(self, info: Optional[PortInfo]) -> bool:
        if info is None or info.vid is None:
            return False
        if (info.vid, info.pid) in {tuple(ids) for ids in self.config.hdlc_usb_ids}:
            return True
        return ChipDatabase.family_for_port(info) == SPREADTRUM

    def plan(self) -> List[Attempt]:
        """Ordered (variant, baud) attempts making up one cycle."""
        transport = self.session.transport
        if self._is_hdlc_port(transport.port_info):
            if transport.supports_baud_rate and self.config.hdlc_baud_rates:
                return [(ProtocolVariant.HDLC_FRAMED, rate) for rate in self.config.hdlc_baud_rates]
            return [(ProtocolVariant.HDLC_FRAMED, None)]
        attempts: List[Attempt] = [(ProtocolVariant.BINARY_FRAMED, None)] * self.config.binary_attempts
        attempts.append((ProtocolVariant.XML_COMMAND, None))
        return attempts

    def run(self) -> ChipIdentity:
        """Negotiate until Ready or AgentRequired; returns the chip identity."""
        session = self.session
        session.open()
        self._enter(HandshakeState.PORT_OPENED)
        plan = self.plan()
        last_error: Optional[Exception] = None
        try:
            for cycle in range(1, self.config.handshake_cycles + 1):
                for variant, rate in plan:
                    try:
                        command_set, identity = self._attempt(variant, rate)
                    except (TransportTimeout, FrameError, DeviceError) as e:
                        last_error = e
                        self._enter(HandshakeState.IDENTITY_TIMEOUT)
                        logger.info("No %s answer%s (cycle %d/%d): %s", variant.value,
                                    f" at {rate} baud" if rate else "", cycle, self.config.handshake_cycles, e)
                        session.link.drain()
                        continue
                    self._select(variant, command_set, identity)
                    return identity
        except DeviceDisconnected as e:
            session.invalidate(str(e))
            raise
        tried = ", ".join(v.value + (f"@{r}" if r else "") for v, r in plan)
        raise HandshakeExhausted(
            f"no answer after {self.config.handshake_cycles} cycle(s) of [{tried}]",
            command=session.link.last_command,
        ) from last_error

    def _attempt(self, variant: ProtocolVariant, rate: Optional[int]):
        session = self.session
        link = session.link
        command_set = get_command_set(variant)(link, self.config, self.chip_db)
        link.replace_codec(get_codec(variant), command_set.log_filter)
        if rate is not None:
            session.transport.set_baud_rate(rate)
        self._enter(HandshakeState.IDENTITY_SENT)
        identity = command_set.probe_identity(self.config.handshake_timeout)
        self._enter(HandshakeState.IDENTITY_ACK)
        logger.info("Identified %s (0x%04X, %s) over %s", identity.name, identity.hw_code,
                    identity.stage.value, variant.value)
        return command_set, identity

    def _select(self, variant: ProtocolVariant, command_set, identity: ChipIdentity) -> None:
        if identity.checksum_supported:
            command_set.enable_checksum()
        self.session.attach(variant, command_set, identity)
        self._enter(HandshakeState.VARIANT_SELECTED)
        if identity.stage == BootStage.BOOT_ROM:
            self._enter(HandshakeState.AGENT_REQUIRED)
            return
        self._ready(command_set)

    def _ready(self, command_set) -> None:
        self.session.link.timeout = self.config.io_timeout_base
        self._enter(HandshakeState.READY)
        command_set.prepare()

    def reenter(self) -> ChipIdentity:
        """Re-probe after an agent handoff and reach Ready in the agent context.

        The command set has already switched its framing in after_handoff();
        here the agent is identified afresh and, for HDLC, the link optionally
        moves to the fast baud rate.
        """
        self.session.link.drain()
        identity = self._probe_agent([None], "agent did not identify after handoff")
        self._agent_ready(identity)
        if self.session.variant == ProtocolVariant.HDLC_FRAMED and self.config.hdlc_fast_baud:
            self.session.command_set.switch_baud(self.config.hdlc_fast_baud)
        return identity

    def resync(self) -> ChipIdentity:
        """Find the running agent again after a baud switch lost it.

        The handshake restarts in the agent context: the session's command
        set keeps its stage and framing, and every configured rate (the fast
        rate included) is probed. No further baud switch is attempted.
        """
        rates: List[Optional[int]] = [None]
        if self.session.transport.supports_baud_rate:
            rates = list(self.config.hdlc_baud_rates)
            if self.config.hdlc_fast_baud and self.config.hdlc_fast_baud not in rates:
                rates.append(self.config.hdlc_fast_baud)
        identity = self._probe_agent(rates or [None], "agent lost after baud switch")
        self._agent_ready(identity)
        return identity

    def _probe_agent(self, rates: List[Optional[int]], failure: str) -> ChipIdentity:
        session = self.session
        command_set = session.command_set
        link = session.link
        last_error: Optional[Exception] = None
        for cycle in range(1, self.config.handshake_cycles + 1):
            for rate in rates:
                if rate is not None:
                    session.transport.set_baud_rate(rate)
                self._enter(HandshakeState.IDENTITY_SENT)
                try:
                    identity = command_set.probe_identity(self.config.handshake_timeout)
                except (TransportTimeout, FrameError, DeviceError) as e:
                    last_error = e
                    self._enter(HandshakeState.IDENTITY_TIMEOUT)
                    logger.info("Agent probe%s failed (cycle %d/%d): %s", f" at {rate} baud" if rate else "",
                                cycle, self.config.handshake_cycles, e)
                    link.drain()
                    continue
                self._enter(HandshakeState.IDENTITY_ACK)
                return identity
        raise HandshakeExhausted(failure, command=link.last_command) from last_error

    def _agent_ready(self, identity: ChipIdentity) -> None:
        session = self.session
        command_set = session.command_set
        if identity.stage != BootStage.AGENT:
            raise HandshakeExhausted(f"{identity.name} still answers from the boot ROM after handoff",
                                     command=session.link.last_command, chip=identity.name)
        if identity.checksum_supported:
            command_set.enable_checksum()
        session.attach(session.variant, command_set, identity)
        self._enter(HandshakeState.VARIANT_SELECTED)
        self._ready(command_set)
