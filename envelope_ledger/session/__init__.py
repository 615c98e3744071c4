"""Session gate and authentication collaborators."""

from envelope_ledger.session.auth import (
    AuthError,
    AuthProviderInterface,
    InMemoryAuthProvider,
)
from envelope_ledger.session.gate import (
    SessionGate,
    SessionStateRepository,
    effective_authentication,
)

__all__ = [
    "AuthError",
    "AuthProviderInterface",
    "InMemoryAuthProvider",
    "SessionGate",
    "SessionStateRepository",
    "effective_authentication",
]
