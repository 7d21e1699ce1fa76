from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from core.models.lobby import Team
from core.types import MatchId, UserId


class RevenueSplit(BaseModel):
    """Creator/platform shares of gifted value; the two always sum to one."""

    creator_share: Decimal
    platform_share: Decimal

    @model_validator(mode="after")
    def check_total(self) -> "RevenueSplit":
        if self.creator_share + self.platform_share != Decimal("1"):
            raise ValueError("creator_share and platform_share must sum to 1")
        if self.creator_share < 0 or self.platform_share < 0:
            raise ValueError("shares cannot be negative")
        return self


class Reward(BaseModel):
    match_id: MatchId
    player_id: UserId
    team: Team
    reward_amount_sek: Decimal
    is_winner: bool
    creator_share: Decimal
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
