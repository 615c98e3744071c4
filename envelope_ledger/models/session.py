"""
Session Models

The session gate only needs to know *who* is signed in and *when* that was
last confirmed by the remote authentication service.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from envelope_ledger.models.ledger import UtcDatetime


class User(BaseModel):
    """A remote user as reported by the authentication collaborator."""

    id: str = Field(..., min_length=1, description="Stable remote user identifier")
    username: str = Field(..., description="Email or id when no email exists")
    display_name: str = Field(default="User")
    email: Optional[str] = None


class SessionState(BaseModel):
    """
    Persisted session state.

    This is what survives a restart, so a previously signed-in user can keep
    working offline for the grace period.
    """

    current_user: Optional[User] = None
    is_authenticated: bool = False
    last_auth_time: Optional[UtcDatetime] = None
    offline_grace_period: timedelta = Field(default=timedelta(days=7))


class AuthDecision(BaseModel):
    """Outcome of one evaluation of the session gate."""

    is_authenticated: bool
    user: Optional[User] = None
    via_grace_period: bool = Field(
        default=False,
        description="True when access comes from the offline grace window",
    )
    evaluated_at: datetime

    @property
    def has_remote_session(self) -> bool:
        return self.is_authenticated and not self.via_grace_period
