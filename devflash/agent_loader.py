"""
Agent loading: get a download agent running on a device still in its boot ROM.

Sequence:
1. Fail fast with SignatureRequired when the chip rejects unsigned agents and
   nothing (exploit, auth material, signed image) can get past that.
2. Send the matching exploit payload, if any. Only the exact expected
   acknowledgement code counts as success.
3. Upload the First image, jump, wait for readiness; repeat for a Second
   image if one is paired with it.
4. Re-enter Ready through the negotiator in the agent context.

Upload failures are retried; a handoff timeout invalidates the session.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from .errors import (
    AuthRejected,
    DeviceDisconnected,
    DeviceError,
    ExploitFailed,
    FrameError,
    HandoffTimeout,
    SignatureRequired,
    TransportTimeout,
)
from .exploits import ExploitTable, ack_name
from .models import AgentImage, AgentStage, AuthMaterial, ChipIdentity, ExploitDescriptor

logger = logging.getLogger(__name__)


def split_stages(images: Sequence[AgentImage]) -> Tuple[AgentImage, Optional[AgentImage]]:
    firsts = [img for img in images if img.stage == AgentStage.FIRST]
    seconds = [img for img in images if img.stage == AgentStage.SECOND]
    if len(firsts) != 1 or len(seconds) > 1:
        raise ValueError(
            f"expected one first-stage and at most one second-stage image, got {len(firsts)}/{len(seconds)}"
        )
    return firsts[0], (seconds[0] if seconds else None)


class AgentLoader:
    """Uploads and hands off to a download agent for one session."""

    def __init__(self, session, negotiator, exploits: Optional[ExploitTable] = None):
        self.session = session
        self.negotiator = negotiator
        self.exploits = exploits or ExploitTable()
        self.config = session.config

    def _chip(self) -> Optional[str]:
        chip = self.session.chip
        return chip.name if chip else None

    def load(
        self,
        images: Sequence[AgentImage],
        *,
        material: Optional[AuthMaterial] = None,
        strategy=None,
    ) -> ChipIdentity:
        """Run the full loading sequence and return the agent's identity."""
        first, second = split_stages(images)
        session = self.session
        identity = session.chip
        command_set = session.command_set
        exploit = self.exploits.lookup(identity)

        signed = first.signed and (second is None or second.signed)
        if identity.protection.rejects_unsigned_agent and exploit is None and material is None and not signed:
            raise SignatureRequired(
                "device rejects unsigned agents and no exploit, auth material or signature is configured",
                chip=identity.name,
            )

        try:
            if exploit is not None:
                self._exploit(command_set, exploit)
            if material is not None and strategy is not None and identity.protection.needs_auth:
                self._authenticate(strategy, material)
            self._stage(command_set, first)
            if second is not None:
                self._stage(command_set, second)
        except DeviceDisconnected as e:
            session.invalidate(str(e))
            raise
        return self.negotiator.reenter()

    def _authenticate(self, strategy, material: AuthMaterial) -> None:
        try:
            self.session.authenticate(strategy, material)
        except AuthRejected as e:
            # Rejection only degrades the session.
            logger.warning("Continuing agent load unauthenticated: %s", e)

    def _exploit(self, command_set, descriptor: ExploitDescriptor) -> None:
        logger.info("Sending exploit %s (%d bytes) for %s", descriptor.name, len(descriptor.payload), self._chip())
        try:
            ack = command_set.send_exploit(descriptor)
        except (DeviceError, FrameError) as e:
            raise ExploitFailed(
                f"{descriptor.name} refused: {e.message}",
                expected=descriptor.ack_code, command=e.command, chip=self._chip(),
            ) from e
        if ack != descriptor.ack_code:
            raise ExploitFailed(
                f"{descriptor.name} acknowledged with {ack_name(ack)}, expected {ack_name(descriptor.ack_code)}",
                ack=ack, expected=descriptor.ack_code, chip=self._chip(),
            )
        logger.info("Exploit %s acknowledged (%s)", descriptor.name, ack_name(ack))

    def _stage(self, command_set, image: AgentImage) -> None:
        self._upload(command_set, image)
        command_set.jump(image.load_address)
        command_set.after_handoff(image)
        try:
            command_set.wait_ready(self.config.handoff_timeout)
        except HandoffTimeout as e:
            self.session.invalidate(f"{image.stage.value}-stage agent never became ready")
            raise e.with_context(chip=self._chip())
        logger.info("%s-stage agent running at 0x%X", image.stage.value, image.load_address)

    def _upload(self, command_set, image: AgentImage) -> None:
        attempts = self.config.transfer_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                command_set.upload_agent(image)
                return
            except (TransportTimeout, FrameError, DeviceError) as e:
                if attempt == attempts:
                    raise e.with_context(chip=self._chip())
                logger.warning("Agent upload failed (%d/%d): %s", attempt, attempts, e)
                self.session.link.drain()
