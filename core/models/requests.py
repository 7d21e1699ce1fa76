from datetime import timedelta
from decimal import Decimal

from pydantic import BaseModel, Field

from core.models.lobby import Team
from core.types import EventId, UserId


class CreateLobbyRequest(BaseModel):
    format: str
    is_private: bool = False
    original_stream_id: str | None = None


class JoinLobbyRequest(BaseModel):
    preferred_team: Team | None = None


class PromoteLeaderRequest(BaseModel):
    user_id: UserId


class GiftRequest(BaseModel):
    event_id: EventId | None = None
    recipient_id: UserId
    gift_id: str | None = None
    amount_sek: Decimal = Field(ge=0)


class InvitationRequest(BaseModel):
    invitee_id: UserId


class DurationRequest(BaseModel):
    minutes: int


class GateStatus(BaseModel):
    allowed: bool
    cooldown_remaining_seconds: int = 0

    @classmethod
    def from_remaining(cls, allowed: bool, remaining: timedelta | None) -> "GateStatus":
        seconds = int(remaining.total_seconds()) if remaining else 0
        return cls(allowed=allowed, cooldown_remaining_seconds=seconds)
