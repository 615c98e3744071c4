"""
Session Gate

Decides whether the app should treat the user as signed in.

The rule is:
    authenticated = live remote user
                    OR (no remote user AND device offline AND previously
                        authenticated AND now - last_auth_time < grace period)

DESIGN DECISION: A grace-period session lets the user keep working on their
local ledger while offline, but it is never trusted for remote writes. Only a
live remote signal yields a ``remote_user_id``.

``last_auth_time`` only moves when the remote service confirms a user, so the
grace window cannot be extended by staying offline.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from envelope_ledger.config import SessionSettings, get_settings
from envelope_ledger.models.ledger import as_utc, utc_now
from envelope_ledger.models.session import AuthDecision, SessionState, User
from envelope_ledger.session.auth import AuthError, AuthProviderInterface


logger = structlog.get_logger(__name__)

DecisionCallback = Callable[[AuthDecision], None]


def effective_authentication(
    has_remote_user: bool,
    is_offline: bool,
    previously_authenticated: bool,
    last_auth_time: Optional[datetime],
    now: datetime,
    grace_period: timedelta,
) -> bool:
    """Pure form of the session rule."""
    if has_remote_user:
        return True
    if not is_offline or not previously_authenticated or last_auth_time is None:
        return False
    return as_utc(now) - as_utc(last_auth_time) < grace_period


class SessionStateRepository:
    """
    Persists SessionState as a JSON file.

    With no path configured, state lives only in memory.
    """

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None

    def load(self, default_grace: timedelta) -> SessionState:
        if self._path is None or not self._path.exists():
            return SessionState(offline_grace_period=default_grace)
        try:
            return SessionState.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("session_state_unreadable", path=str(self._path), error=str(e))
            return SessionState(offline_grace_period=default_grace)

    def save(self, state: SessionState) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(state.model_dump_json(indent=2), encoding="utf-8")


class SessionGate:
    """
    Tracks the signed-in user across online and offline periods.

    Usage:
        gate = SessionGate()
        gate.attach(auth_provider, is_offline=lambda: not reconciler.meta.is_online)
        if gate.remote_user_id:
            ...  # safe to write remotely
    """

    def __init__(
        self,
        settings: Optional[SessionSettings] = None,
        repository: Optional[SessionStateRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        settings = settings or get_settings().session
        self._repository = repository or SessionStateRepository(settings.state_path)
        self._clock = clock
        self._state = self._repository.load(settings.offline_grace_period)
        self._remote_live = False
        self._callbacks: list[DecisionCallback] = []
        self._provider: Optional[AuthProviderInterface] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.login_error: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_user(self) -> Optional[User]:
        return self._state.current_user

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def remote_user_id(self) -> Optional[str]:
        """The user id, only while backed by a live remote session."""
        if self._remote_live and self._state.current_user is not None:
            return self._state.current_user.id
        return None

    def on_change(self, callback: DecisionCallback) -> None:
        """Register a callback run after every auth decision."""
        self._callbacks.append(callback)

    def _commit(self, state: SessionState, decision: AuthDecision) -> AuthDecision:
        self._state = state
        self._repository.save(state)
        for callback in list(self._callbacks):
            callback(decision)
        return decision

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def handle_auth_state(
        self,
        remote_user: Optional[User],
        is_offline: bool,
        now: Optional[datetime] = None,
    ) -> AuthDecision:
        """Apply one remote auth signal (a user, or None)."""
        now = as_utc(now or self._clock())
        previous = self._state

        authenticated = effective_authentication(
            has_remote_user=remote_user is not None,
            is_offline=is_offline,
            previously_authenticated=previous.is_authenticated,
            last_auth_time=previous.last_auth_time,
            now=now,
            grace_period=previous.offline_grace_period,
        )
        via_grace = authenticated and remote_user is None
        user = remote_user or (previous.current_user if via_grace else None)

        self._remote_live = remote_user is not None
        state = previous.model_copy(
            update={
                "current_user": user,
                "is_authenticated": authenticated,
                "last_auth_time": now if remote_user is not None else previous.last_auth_time,
            }
        )

        if via_grace:
            logger.info("session_offline_grace", user_id=user.id if user else None)
        elif user is not None:
            logger.info("session_signed_in", user_id=user.id)
        else:
            logger.info("session_signed_out")

        decision = AuthDecision(
            is_authenticated=authenticated,
            user=user,
            via_grace_period=via_grace,
            evaluated_at=now,
        )
        return self._commit(state, decision)

    def record_sign_in(self, user: User, now: Optional[datetime] = None) -> AuthDecision:
        """A successful interactive sign-in."""
        return self.handle_auth_state(user, is_offline=False, now=now)

    def sign_out(self) -> AuthDecision:
        """Forget the user entirely; no grace applies after an explicit sign-out."""
        now = as_utc(self._clock())
        self._remote_live = False
        state = self._state.model_copy(
            update={"current_user": None, "is_authenticated": False}
        )
        logger.info("session_signed_out")
        decision = AuthDecision(is_authenticated=False, evaluated_at=now)
        return self._commit(state, decision)

    # ------------------------------------------------------------------
    # Provider wiring
    # ------------------------------------------------------------------

    def attach(
        self,
        provider: AuthProviderInterface,
        is_offline: Callable[[], bool],
    ) -> Callable[[], None]:
        """
        Follow the provider's auth stream.

        Attaching twice is a no-op; returns the function that detaches.
        """
        if self._unsubscribe is not None:
            return self._unsubscribe

        self._provider = provider
        unsubscribe = provider.on_auth_state_changed(
            lambda user: self.handle_auth_state(user, is_offline())
        )

        def detach() -> None:
            unsubscribe()
            self._unsubscribe = None
            self._provider = None

        self._unsubscribe = detach
        return detach

    async def login(self, email: str, password: str) -> bool:
        """Sign in through the attached provider. Sets ``login_error`` on failure."""
        if self._provider is None:
            raise RuntimeError("No auth provider attached")
        self.login_error = None
        try:
            user = await self._provider.sign_in(email, password)
        except AuthError as e:
            logger.warning("session_login_failed", code=e.code)
            self.login_error = e.user_message
            return False
        self.record_sign_in(user)
        return True

    async def logout(self) -> None:
        if self._provider is not None:
            await self._provider.sign_out()
        self.sign_out()
