"""Tests for devflash/session.py: lifecycle, locking and authorization state."""

from __future__ import annotations

import pytest

from devflash.auth import DigestSignaturePair, NoAuth
from devflash.errors import AuthRejected, NotAuthorized, PortUnavailable, SessionClosed
from devflash.interfaces import SessionState
from devflash.mocks import MockClock, MockTransport, RecordingSink
from devflash.models import AuthMaterial, Partition
from devflash.port_lock import list_all_locks
from devflash.session import AuthState, Session

from fakes import MemoryCommandSet, ready_session

PORT = "/dev/ttyACM0"


def _session(transport=None, **kwargs):
    return Session(PORT, transport or MockTransport(), clock=MockClock(), **kwargs)


class TestLifecycle:
    def test_open_close(self):
        transport = MockTransport()
        session = _session(transport)
        session.open()
        assert session.state == SessionState.OPEN
        assert transport.is_open()
        assert len(list_all_locks()) == 1
        session.close()
        assert session.state == SessionState.CLOSED
        assert not transport.is_open()
        assert list_all_locks() == []

    def test_open_is_idempotent(self):
        transport = MockTransport()
        session = _session(transport).open()
        session.open()
        assert transport.open_count == 1

    def test_context_manager(self):
        with _session() as session:
            assert session.usable
        assert session.state == SessionState.CLOSED

    def test_second_session_on_same_port_is_refused(self):
        first = _session().open()
        second = _session()
        with pytest.raises(PortUnavailable, match="held"):
            second.open()
        first.close()
        second.open()
        assert second.usable

    def test_sessions_on_different_ports_are_independent(self):
        a = Session("/dev/ttyACM0", MockTransport(), clock=MockClock()).open()
        b = Session("/dev/ttyACM1", MockTransport(), clock=MockClock()).open()
        a.invalidate("unplugged")
        assert b.usable

    def test_failed_open_releases_lock(self):
        transport = MockTransport()
        transport.set_fail_on_open(True)
        with pytest.raises(PortUnavailable):
            _session(transport).open()
        assert list_all_locks() == []

    def test_no_command_set_before_handshake(self):
        session = _session().open()
        with pytest.raises(SessionClosed):
            session.command_set


class TestInvalidation:
    def test_invalidate_releases_everything(self, config):
        sink = RecordingSink()
        cs = MemoryCommandSet(config)
        session = ready_session(cs, sink=sink)
        session.catalog.load([Partition("boot", 0, 0, 8)])
        session.invalidate("device went away")
        assert session.state == SessionState.INVALIDATED
        assert not session.catalog.valid
        assert not session.transport.is_open()
        assert sink.logs[-1][0] == "session invalidated: device went away"

    def test_invalidated_session_cannot_reopen(self):
        session = _session().open()
        session.invalidate("gone")
        with pytest.raises(SessionClosed, match="gone"):
            session.open()
        with pytest.raises(SessionClosed):
            with session.exclusive():
                pass

    def test_close_after_invalidate_is_noop(self):
        session = _session().open()
        session.invalidate("gone")
        session.close()
        assert session.state == SessionState.INVALIDATED


class TestAuthorization:
    def test_unauthenticated_session_cannot_touch_protected(self, config):
        session = ready_session(MemoryCommandSet(config))
        with pytest.raises(NotAuthorized):
            session.check_authorized(Partition("persist", 0, 0, 8, protected=True))
        session.check_authorized(Partition("boot", 0, 0, 8))

    def test_accepted_digest_grants_privilege(self, config):
        session = ready_session(MemoryCommandSet(config))
        state = session.authenticate(DigestSignaturePair(), AuthMaterial(b"d", b"s"))
        assert state == AuthState.ACCEPTED
        assert session.privileged
        session.check_authorized(Partition("persist", 0, 0, 8, protected=True))

    def test_no_auth_is_accepted_without_privilege(self, config):
        session = ready_session(MemoryCommandSet(config))
        session.authenticate(NoAuth())
        assert session.auth_state == AuthState.ACCEPTED
        assert not session.privileged

    def test_rejection_keeps_session_open(self, config):
        session = ready_session(MemoryCommandSet(config, accept_auth=False))
        with pytest.raises(AuthRejected) as exc:
            session.authenticate(DigestSignaturePair(), AuthMaterial(b"d", b"s"))
        assert exc.value.chip == "MT6765"
        assert session.auth_state == AuthState.REJECTED
        assert session.usable

    def test_close_discards_material(self, config):
        material = AuthMaterial(b"digest", b"signature")
        session = ready_session(MemoryCommandSet(config))
        session.authenticate(DigestSignaturePair(), material)
        session.close()
        assert material.digest == b"" and material.signature == b""
        assert session.auth_state == AuthState.NONE

    def test_to_dict(self, config):
        session = ready_session(MemoryCommandSet(config))
        info = session.to_dict()
        assert info["state"] == "ready"
        assert info["variant"] == "binary"
        assert info["chip"]["name"] == "MT6765"
