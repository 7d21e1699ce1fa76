from fastapi import APIRouter

from core.models.invitation import Invitation
from core.models.lobby import Lobby
from core.models.requests import JoinLobbyRequest
from server.api.dependencies import CurrentUserDep, EngineDep

router = APIRouter(tags=["Invitations"])


@router.get("", response_model=list[Invitation])
async def pending_invitations(engine: EngineDep, user_id: CurrentUserDep) -> list[Invitation]:
    """Invitations waiting on the caller, newest first."""
    return await engine.lobbies.get_pending_invitations(user_id)


@router.post("/{invitation_id}/accept", response_model=Lobby)
async def accept_invitation(
    invitation_id: str, body: JoinLobbyRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Lobby:
    return await engine.lobbies.accept_invitation(invitation_id, user_id, body.preferred_team)


@router.post("/{invitation_id}/decline", response_model=Invitation)
async def decline_invitation(
    invitation_id: str, engine: EngineDep, user_id: CurrentUserDep
) -> Invitation:
    return await engine.lobbies.decline_invitation(invitation_id, user_id)
