"""
Authentication Provider Interface

The session gate does not talk to an identity service directly. It consumes
an AuthProviderInterface: sign in, sign out, and a stream of "current remote
user or none".
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Optional

from envelope_ledger.models.session import User


AuthStateCallback = Callable[[Optional[User]], None]


# Provider error codes -> message shown to the user
AUTH_ERROR_MESSAGES = {
    "auth/invalid-email": "Invalid email address.",
    "auth/user-disabled": "This account has been disabled.",
    "auth/user-not-found": "No account found with this email.",
    "auth/wrong-password": "Incorrect password.",
    "auth/too-many-requests": "Too many failed attempts. Please try again later.",
    "auth/email-already-in-use": "An account with this email already exists.",
    "auth/weak-password": "Password should be at least 6 characters.",
}

DEFAULT_LOGIN_ERROR = "Login failed. Please try again."


class AuthError(Exception):
    """Authentication failed; ``code`` is the provider's error code."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code

    @property
    def user_message(self) -> str:
        return AUTH_ERROR_MESSAGES.get(self.code, DEFAULT_LOGIN_ERROR)


class AuthProviderInterface(ABC):
    """Abstract interface for the remote authentication service."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> User:
        """
        Sign in with email and password.

        Raises:
            AuthError: If the credentials are rejected
        """
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass

    @abstractmethod
    def on_auth_state_changed(self, callback: AuthStateCallback) -> Callable[[], None]:
        """
        Subscribe to remote user changes.

        The callback receives the current user (or None) right away and on
        every change. Returns a function that unsubscribes.
        """
        pass


class InMemoryAuthProvider(AuthProviderInterface):
    """
    Auth provider backed by a dict of accounts.

    Used by the tests and for local development.
    """

    def __init__(self, accounts: Optional[dict[str, tuple[str, User]]] = None):
        # email -> (password, user)
        self._accounts = dict(accounts or {})
        self._current: Optional[User] = None
        self._callbacks: list[AuthStateCallback] = []

    @property
    def current_user(self) -> Optional[User]:
        return self._current

    def add_account(self, email: str, password: str, user: User) -> None:
        self._accounts[email] = (password, user)

    async def sign_in(self, email: str, password: str) -> User:
        if "@" not in email:
            raise AuthError("auth/invalid-email")
        if email not in self._accounts:
            raise AuthError("auth/user-not-found")
        expected, user = self._accounts[email]
        if password != expected:
            raise AuthError("auth/wrong-password")
        self.set_user(user)
        return user

    async def sign_out(self) -> None:
        self.set_user(None)

    def set_user(self, user: Optional[User]) -> None:
        """Push a remote user change, as the real service would."""
        self._current = user
        for callback in list(self._callbacks):
            callback(user)

    def on_auth_state_changed(self, callback: AuthStateCallback) -> Callable[[], None]:
        self._callbacks.append(callback)
        callback(self._current)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe
