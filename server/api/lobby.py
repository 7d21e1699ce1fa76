from fastapi import APIRouter, status

from core.models.invitation import Invitation
from core.models.lobby import Lobby
from core.models.requests import (
    CreateLobbyRequest,
    GateStatus,
    InvitationRequest,
    JoinLobbyRequest,
    PromoteLeaderRequest,
)
from server.api.dependencies import CurrentUserDep, EngineDep

router = APIRouter(tags=["Lobbies"])


@router.get("/gate", response_model=GateStatus)
async def gate_status(engine: EngineDep, user_id: CurrentUserDep) -> GateStatus:
    """Whether the caller may open a lobby right now."""
    decision = await engine.gate.can_create_lobby(user_id)
    return GateStatus.from_remaining(decision.allowed, decision.cooldown_remaining)


@router.post("", response_model=Lobby, status_code=status.HTTP_201_CREATED)
async def create_lobby(
    body: CreateLobbyRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Lobby:
    return await engine.lobbies.create_lobby(
        user_id,
        body.format,
        is_private=body.is_private,
        original_stream_id=body.original_stream_id,
    )


@router.get("/me", response_model=Lobby | None)
async def my_lobby(engine: EngineDep, user_id: CurrentUserDep) -> Lobby | None:
    return await engine.lobbies.get_active_lobby(user_id)


@router.get("/{lobby_id}", response_model=Lobby)
async def get_lobby(lobby_id: str, engine: EngineDep) -> Lobby:
    return await engine.lobbies.get_lobby(lobby_id)


@router.post("/{lobby_id}/join", response_model=Lobby)
async def join_lobby(
    lobby_id: str, body: JoinLobbyRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Lobby:
    return await engine.lobbies.join_lobby(lobby_id, user_id, body.preferred_team)


@router.post("/{lobby_id}/leave", response_model=Lobby)
async def leave_lobby(lobby_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Lobby:
    return await engine.lobbies.leave_lobby(lobby_id, user_id)


@router.post("/{lobby_id}/leader", response_model=Lobby)
async def promote_leader(
    lobby_id: str, body: PromoteLeaderRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Lobby:
    return await engine.lobbies.promote_leader(lobby_id, user_id, body.user_id)


@router.post(
    "/{lobby_id}/invitations", response_model=Invitation, status_code=status.HTTP_201_CREATED
)
async def send_invitation(
    lobby_id: str, body: InvitationRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Invitation:
    return await engine.lobbies.send_invitation(lobby_id, user_id, body.invitee_id)


@router.post("/{lobby_id}/matchmaking", response_model=Lobby)
async def enter_matchmaking(lobby_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Lobby:
    return await engine.lobbies.enter_matchmaking(lobby_id, user_id)


@router.delete("/{lobby_id}/matchmaking", response_model=Lobby)
async def cancel_matchmaking(lobby_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Lobby:
    return await engine.lobbies.cancel_matchmaking(lobby_id, user_id)
