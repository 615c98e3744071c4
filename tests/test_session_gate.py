"""
Tests for the session gate and the in-memory auth provider.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from envelope_ledger.config import SessionSettings
from envelope_ledger.models.session import SessionState, User
from envelope_ledger.session import (
    AuthError,
    InMemoryAuthProvider,
    SessionGate,
    SessionStateRepository,
    effective_authentication,
)


T0 = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
ALICE = User(id="user-alice", username="alice@example.com", email="alice@example.com")


def make_gate(tmp_path=None, clock=lambda: T0) -> SessionGate:
    path = str(tmp_path / "session.json") if tmp_path is not None else None
    return SessionGate(
        settings=SessionSettings(offline_grace_period_days=7),
        repository=SessionStateRepository(path),
        clock=clock,
    )


class TestEffectiveAuthentication:
    """Tests for the pure session rule."""

    def test_remote_user_always_authenticated(self):
        """Test that a live remote user wins regardless of other inputs."""
        assert effective_authentication(True, False, False, None, T0, timedelta(days=7))

    def test_online_without_remote_user(self):
        """Test that being online with no remote user is signed out."""
        assert not effective_authentication(False, False, True, T0, T0, timedelta(days=7))

    def test_offline_within_grace(self):
        """Test offline access 3 days after the last confirmation."""
        now = T0 + timedelta(days=3)
        assert effective_authentication(False, True, True, T0, now, timedelta(days=7))

    def test_offline_after_grace(self):
        """Test that 8 days offline signs the user out."""
        now = T0 + timedelta(days=8)
        assert not effective_authentication(False, True, True, T0, now, timedelta(days=7))

    def test_offline_never_authenticated(self):
        """Test that grace needs a previous sign-in."""
        assert not effective_authentication(False, True, False, T0, T0, timedelta(days=7))


class TestSessionGate:
    """Tests for the stateful gate."""

    def test_sign_in_sets_last_auth_time(self):
        """Test that a live user is recorded with the confirmation time."""
        gate = make_gate()
        decision = gate.record_sign_in(ALICE)
        assert decision.is_authenticated
        assert decision.has_remote_session
        assert gate.state.last_auth_time == T0
        assert gate.remote_user_id == ALICE.id

    def test_grace_session_is_not_remote(self):
        """Test that offline grace keeps the user but disables remote writes."""
        gate = make_gate()
        gate.record_sign_in(ALICE)

        decision = gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=3))

        assert decision.is_authenticated
        assert decision.via_grace_period
        assert gate.current_user == ALICE
        assert gate.remote_user_id is None

    def test_last_auth_time_does_not_move_offline(self):
        """Test that staying offline cannot extend the grace window."""
        gate = make_gate()
        gate.record_sign_in(ALICE)

        gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=3))
        gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=6))
        assert gate.state.last_auth_time == T0

        decision = gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=8))
        assert not decision.is_authenticated
        assert gate.current_user is None

    def test_online_without_user_signs_out(self):
        """Test that the remote saying 'no user' while online is final."""
        gate = make_gate()
        gate.record_sign_in(ALICE)
        decision = gate.handle_auth_state(None, is_offline=False, now=T0 + timedelta(hours=1))
        assert not decision.is_authenticated

    def test_explicit_sign_out_disables_grace(self):
        """Test that no grace applies after signing out."""
        gate = make_gate()
        gate.record_sign_in(ALICE)
        gate.sign_out()
        decision = gate.handle_auth_state(None, is_offline=True, now=T0 + timedelta(hours=1))
        assert not decision.is_authenticated

    def test_on_change_callbacks(self):
        """Test that every decision reaches subscribers."""
        gate = make_gate()
        seen = []
        gate.on_change(seen.append)
        gate.record_sign_in(ALICE)
        gate.sign_out()
        assert [d.is_authenticated for d in seen] == [True, False]

    def test_state_persists_across_restarts(self, tmp_path):
        """Test that a restarted gate can still grant offline grace."""
        make_gate(tmp_path).record_sign_in(ALICE)

        restarted = make_gate(tmp_path)
        assert restarted.current_user == ALICE
        decision = restarted.handle_auth_state(None, is_offline=True, now=T0 + timedelta(days=2))
        assert decision.is_authenticated

    def test_corrupt_state_file_starts_fresh(self, tmp_path):
        """Test that an unreadable state file is ignored."""
        (tmp_path / "session.json").write_text("{not json", encoding="utf-8")
        gate = make_gate(tmp_path)
        assert gate.state == SessionState(offline_grace_period=timedelta(days=7))


class TestAuthProvider:
    """Tests for login through the provider."""

    def make_attached_gate(self):
        provider = InMemoryAuthProvider({"alice@example.com": ("secret1", ALICE)})
        gate = make_gate()
        gate.attach(provider, is_offline=lambda: False)
        return provider, gate

    def test_attach_receives_current_user(self):
        """Test that attaching replays the provider's current state."""
        provider = InMemoryAuthProvider()
        provider.set_user(ALICE)
        gate = make_gate()
        gate.attach(provider, is_offline=lambda: False)
        assert gate.remote_user_id == ALICE.id

    def test_login_success(self):
        """Test a successful login."""
        _, gate = self.make_attached_gate()
        assert asyncio.run(gate.login("alice@example.com", "secret1")) is True
        assert gate.login_error is None
        assert gate.remote_user_id == ALICE.id

    @pytest.mark.parametrize("email,password,message", [
        ("alice", "secret1", "Invalid email address."),
        ("bob@example.com", "secret1", "No account found with this email."),
        ("alice@example.com", "wrong", "Incorrect password."),
    ])
    def test_login_failures(self, email, password, message):
        """Test that provider errors become user-facing messages."""
        _, gate = self.make_attached_gate()
        assert asyncio.run(gate.login(email, password)) is False
        assert gate.login_error == message
        assert not gate.is_authenticated

    def test_unknown_error_code_message(self):
        """Test the default message for unmapped codes."""
        assert AuthError("auth/network-request-failed").user_message == "Login failed. Please try again."

    def test_logout(self):
        """Test that logout clears the provider and the gate."""
        provider, gate = self.make_attached_gate()
        asyncio.run(gate.login("alice@example.com", "secret1"))
        asyncio.run(gate.logout())
        assert provider.current_user is None
        assert gate.current_user is None
        assert gate.remote_user_id is None

    def test_detach_stops_following(self):
        """Test that a detached gate ignores provider changes."""
        provider, gate = self.make_attached_gate()
        detach = gate.attach(provider, is_offline=lambda: False)
        detach()
        provider.set_user(ALICE)
        assert gate.current_user is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
