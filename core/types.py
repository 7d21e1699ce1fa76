from typing import Literal, TypeAlias

UserId: TypeAlias = str
LobbyId: TypeAlias = str
MatchId: TypeAlias = str
EventId: TypeAlias = str
InvitationId: TypeAlias = str
Topic: TypeAlias = str
BlockReason: TypeAlias = Literal["declined_match", "moderation"]

__all__ = [
    "BlockReason",
    "EventId",
    "InvitationId",
    "LobbyId",
    "MatchId",
    "Topic",
    "UserId",
]
