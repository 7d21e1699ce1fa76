from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from core.types import InvitationId, LobbyId, UserId


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class Invitation(BaseModel):
    """A lobby member asking another user to take a seat in their lobby."""

    id: InvitationId = Field(default_factory=lambda: str(uuid4()))
    lobby_id: LobbyId
    inviter_id: UserId
    invitee_id: UserId
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    responded_at: datetime | None = None
    expires_at: datetime

    def is_open(self, now: datetime) -> bool:
        """Pending and not yet past ``expires_at``."""
        return self.status is InvitationStatus.PENDING and now < self.expires_at


class PendingInvitations(BaseModel):
    """Snapshot sent when a client starts listening for invitations."""

    invitations: list[Invitation]
