from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from core.models.lobby import BattleFormat, Team
from core.types import EventId, LobbyId, MatchId, UserId


class MatchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    # declined before any gift landed; no winner, no rewards
    CANCELLED = "cancelled"


class WinnerTeam(str, Enum):
    TEAM_A = "team_a"
    TEAM_B = "team_b"
    DRAW = "draw"

    def includes(self, team: Team) -> bool:
        match self:
            case WinnerTeam.TEAM_A:
                return team is Team.TEAM_A
            case WinnerTeam.TEAM_B:
                return team is Team.TEAM_B
            case WinnerTeam.DRAW:
                return False
        raise ValueError(f"Unhandled winner team: {self!r}")


class RematchState(str, Enum):
    NONE = "none"
    TEAM_A = "team_a"
    TEAM_B = "team_b"
    BOTH = "both"
    EXPIRED = "expired"
    DECLINED = "declined"

    @classmethod
    def requested_by(cls, team: Team) -> "RematchState":
        match team:
            case Team.TEAM_A:
                return cls.TEAM_A
            case Team.TEAM_B:
                return cls.TEAM_B
        raise ValueError(f"Unhandled team: {team!r}")

    @property
    def is_pending(self) -> bool:
        match self:
            case RematchState.TEAM_A | RematchState.TEAM_B:
                return True
            case (
                RematchState.NONE
                | RematchState.BOTH
                | RematchState.EXPIRED
                | RematchState.DECLINED
            ):
                return False
        raise ValueError(f"Unhandled rematch state: {self!r}")


def resolve_winner(team_a_score: Decimal, team_b_score: Decimal) -> WinnerTeam:
    """Exact-equality draw; no secondary tie-break is applied."""
    if team_a_score > team_b_score:
        return WinnerTeam.TEAM_A
    if team_b_score > team_a_score:
        return WinnerTeam.TEAM_B
    return WinnerTeam.DRAW


class GiftEvent(BaseModel):
    event_id: EventId = Field(default_factory=lambda: str(uuid4()))
    match_id: MatchId
    sender_id: UserId
    recipient_id: UserId
    gift_id: str | None = None
    amount_sek: Decimal = Field(ge=0)

    def score(self, weight: Decimal) -> Decimal:
        return self.amount_sek * weight


class Match(BaseModel):
    id: MatchId = Field(default_factory=lambda: str(uuid4()))
    lobby_a_id: LobbyId
    lobby_b_id: LobbyId
    format: BattleFormat
    team_a_players: list[UserId]
    team_b_players: list[UserId]
    team_a_leader_id: UserId
    team_b_leader_id: UserId
    team_a_score: Decimal = Decimal("0")
    team_b_score: Decimal = Decimal("0")
    team_a_total_gifts_sek: Decimal = Decimal("0")
    team_b_total_gifts_sek: Decimal = Decimal("0")
    player_gifts_sek: dict[UserId, Decimal] = Field(default_factory=dict)
    status: MatchStatus = MatchStatus.ACTIVE
    winner_team: WinnerTeam | None = None
    rematch_requested_by: RematchState = RematchState.NONE
    rematch_requested_at: datetime | None = None
    rematch_lobby_id: LobbyId | None = None
    rematch_match_id: MatchId | None = None
    rematch_of_match_id: MatchId | None = None
    duration_minutes: int | None = None
    team_a_duration_vote: int | None = None
    team_b_duration_vote: int | None = None
    departed_player_ids: list[UserId] = Field(default_factory=list)
    declined_by: UserId | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None
    version: int = 0

    def players(self, team: Team) -> list[UserId]:
        return self.team_a_players if team is Team.TEAM_A else self.team_b_players

    def leader(self, team: Team) -> UserId:
        return self.team_a_leader_id if team is Team.TEAM_A else self.team_b_leader_id

    def score(self, team: Team) -> Decimal:
        return self.team_a_score if team is Team.TEAM_A else self.team_b_score

    def total_gifts(self, team: Team) -> Decimal:
        return self.team_a_total_gifts_sek if team is Team.TEAM_A else self.team_b_total_gifts_sek

    def team_of(self, user_id: UserId) -> Team | None:
        if user_id in self.team_a_players:
            return Team.TEAM_A
        if user_id in self.team_b_players:
            return Team.TEAM_B
        return None

    def leader_team(self, user_id: UserId) -> Team | None:
        if user_id == self.team_a_leader_id:
            return Team.TEAM_A
        if user_id == self.team_b_leader_id:
            return Team.TEAM_B
        return None

    @property
    def participants(self) -> list[UserId]:
        return [*self.team_a_players, *self.team_b_players]

    @property
    def is_active(self) -> bool:
        return self.status is MatchStatus.ACTIVE

    @property
    def is_completed(self) -> bool:
        return self.status is MatchStatus.COMPLETED

    def apply_gift(self, team: Team, recipient_id: UserId, score: Decimal, amount: Decimal) -> None:
        """Accumulate one gift; callers must hold the store's write guard."""
        if team is Team.TEAM_A:
            self.team_a_score += score
            self.team_a_total_gifts_sek += amount
        else:
            self.team_b_score += score
            self.team_b_total_gifts_sek += amount
        self.player_gifts_sek[recipient_id] = (
            self.player_gifts_sek.get(recipient_id, Decimal("0")) + amount
        )


class MatchStats(BaseModel):
    """Read model for battle history listings."""

    match_id: MatchId
    format: BattleFormat
    team: Team
    is_leader: bool
    status: MatchStatus
    winner_team: WinnerTeam | None = None
    team_score: Decimal
    opponent_score: Decimal
    reward_amount_sek: Decimal | None = None
    started_at: datetime
    ended_at: datetime | None = None


class ExitKind(str, Enum):
    STREAM = "stream"
    HOME = "home"


class BattleExit(BaseModel):
    """Where a player lands after the battle is over."""

    kind: ExitKind
    stream_id: str | None = None
