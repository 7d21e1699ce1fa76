from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from core.types import BlockReason, UserId


@dataclass
class MatchmakingBlock:
    """A temporary ban from creating lobbies"""

    user_id: UserId
    reason: BlockReason
    blocked_until: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def remaining(self, now: datetime) -> timedelta:
        """Time left on the block, never negative"""
        return max(self.blocked_until - now, timedelta(0))

    def is_active(self, now: datetime) -> bool:
        return self.blocked_until > now


@dataclass
class GateDecision:
    """Outcome of the matchmaking gate check"""

    allowed: bool
    cooldown_remaining: timedelta | None = None
