from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from core.types import LobbyId, MatchId, UserId


class BattleFormat(str, Enum):
    """
    Supported battle formats.\n
    The leading digit is the per-side capacity (1v1 up to 5v5).\n
    """

    ONE_V_ONE = "1v1"
    TWO_V_TWO = "2v2"
    THREE_V_THREE = "3v3"
    FOUR_V_FOUR = "4v4"
    FIVE_V_FIVE = "5v5"

    @property
    def capacity(self) -> int:
        match self:
            case BattleFormat.ONE_V_ONE:
                return 1
            case BattleFormat.TWO_V_TWO:
                return 2
            case BattleFormat.THREE_V_THREE:
                return 3
            case BattleFormat.FOUR_V_FOUR:
                return 4
            case BattleFormat.FIVE_V_FIVE:
                return 5
        raise ValueError(f"Unhandled battle format: {self!r}")


class Team(str, Enum):
    TEAM_A = "team_a"
    TEAM_B = "team_b"

    @property
    def other(self) -> "Team":
        match self:
            case Team.TEAM_A:
                return Team.TEAM_B
            case Team.TEAM_B:
                return Team.TEAM_A
        raise ValueError(f"Unhandled team: {self!r}")


class LobbyStatus(str, Enum):
    OPEN = "open"
    SEARCHING = "searching"
    PAIRED = "paired"
    COMPLETED = "completed"
    DISSOLVED = "dissolved"
    ARCHIVED = "archived"

    @property
    def is_active(self) -> bool:
        """Players in an active lobby cannot be booked anywhere else."""
        match self:
            case LobbyStatus.OPEN | LobbyStatus.SEARCHING | LobbyStatus.PAIRED:
                return True
            case LobbyStatus.COMPLETED | LobbyStatus.DISSOLVED | LobbyStatus.ARCHIVED:
                return False
        raise ValueError(f"Unhandled lobby status: {self!r}")


class Lobby(BaseModel):
    id: LobbyId = Field(default_factory=lambda: str(uuid4()))
    format: BattleFormat
    status: LobbyStatus = LobbyStatus.OPEN
    is_private: bool = False
    host_id: UserId
    team_a_players: list[UserId] = Field(default_factory=list)
    team_b_players: list[UserId] = Field(default_factory=list)
    team_a_leader_id: UserId | None = None
    team_b_leader_id: UserId | None = None
    return_to_solo_stream: bool = False
    original_stream_id: str | None = None
    match_id: MatchId | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    searching_since: datetime | None = None
    version: int = 0

    def players(self, team: Team) -> list[UserId]:
        return self.team_a_players if team is Team.TEAM_A else self.team_b_players

    def leader(self, team: Team) -> UserId | None:
        return self.team_a_leader_id if team is Team.TEAM_A else self.team_b_leader_id

    def set_leader(self, team: Team, user_id: UserId | None) -> None:
        if team is Team.TEAM_A:
            self.team_a_leader_id = user_id
        else:
            self.team_b_leader_id = user_id

    def has_room(self, team: Team) -> bool:
        return len(self.players(team)) < self.format.capacity

    def is_side_full(self, team: Team) -> bool:
        return len(self.players(team)) >= self.format.capacity

    def team_of(self, user_id: UserId) -> Team | None:
        if user_id in self.team_a_players:
            return Team.TEAM_A
        if user_id in self.team_b_players:
            return Team.TEAM_B
        return None

    @property
    def members(self) -> list[UserId]:
        return [*self.team_a_players, *self.team_b_players]

    @property
    def is_full(self) -> bool:
        return self.is_side_full(Team.TEAM_A) and self.is_side_full(Team.TEAM_B)

    @property
    def is_squad_ready(self) -> bool:
        """Team A is staffed and team B is empty: ready for public matchmaking."""
        return self.is_side_full(Team.TEAM_A) and not self.team_b_players
