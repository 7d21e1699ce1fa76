from datetime import UTC, datetime
from decimal import Decimal
from enum import IntEnum
from typing import Annotated, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter

from core.models.invitation import Invitation
from core.models.lobby import Lobby
from core.models.match import BattleExit, Match, RematchState, WinnerTeam
from core.models.reward import Reward
from core.types import LobbyId, MatchId


class WebSocketCloseCode(IntEnum):
    """Custom close codes for WebSocket"""

    NORMAL = 1000
    NOT_FOUND = 4004
    ERROR = 4002
    UNAUTHORIZED = 4003


class BaseEvent(BaseModel):
    # Delivery is at-least-once; clients drop repeated event ids.
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LobbyUpdatedEvent(BaseEvent):
    event: Literal["lobby_updated"] = "lobby_updated"
    lobby: Lobby


class MatchStartedEvent(BaseEvent):
    event: Literal["match_started"] = "match_started"
    match: Match


class ScoreUpdatedEvent(BaseEvent):
    event: Literal["score_updated"] = "score_updated"
    match_id: MatchId
    team_a_score: Decimal
    team_b_score: Decimal
    team_a_total_gifts_sek: Decimal
    team_b_total_gifts_sek: Decimal


class DurationSetEvent(BaseEvent):
    event: Literal["duration_set"] = "duration_set"
    match_id: MatchId
    duration_minutes: int


class MatchCompletedEvent(BaseEvent):
    event: Literal["match_completed"] = "match_completed"
    match: Match
    rewards: list[Reward] = Field(default_factory=list)


class MatchCancelledEvent(BaseEvent):
    event: Literal["match_cancelled"] = "match_cancelled"
    match: Match


class RematchUpdatedEvent(BaseEvent):
    event: Literal["rematch_updated"] = "rematch_updated"
    match_id: MatchId
    rematch_requested_by: RematchState


class RematchStartedEvent(BaseEvent):
    event: Literal["rematch_started"] = "rematch_started"
    match_id: MatchId
    new_match_id: MatchId
    new_lobby_id: LobbyId


class BattleEndedEvent(BaseEvent):
    event: Literal["battle_ended"] = "battle_ended"
    match_id: MatchId
    winner_team: WinnerTeam | None
    exit: BattleExit


class InvitationEvent(BaseEvent):
    event: Literal["battle_invitation"] = "battle_invitation"
    invitation: Invitation


BattleEventType = Annotated[
    LobbyUpdatedEvent
    | MatchStartedEvent
    | ScoreUpdatedEvent
    | DurationSetEvent
    | MatchCompletedEvent
    | MatchCancelledEvent
    | RematchUpdatedEvent
    | RematchStartedEvent
    | BattleEndedEvent
    | InvitationEvent,
    Field(discriminator="event"),
]
BattleEvent: TypeAdapter[BattleEventType] = TypeAdapter(BattleEventType)
