from fastapi import APIRouter

from core.errors import PermissionDenied
from core.models.match import BattleExit, GiftEvent, Match, MatchStats
from core.models.requests import DurationRequest, GiftRequest
from core.models.reward import Reward
from server.api.dependencies import CurrentUserDep, EngineDep

router = APIRouter(tags=["Matches"])


@router.get("/history", response_model=list[MatchStats])
async def match_history(
    engine: EngineDep, user_id: CurrentUserDep, limit: int = 20
) -> list[MatchStats]:
    """The caller's most recent battles, newest first."""
    return await engine.matches.list_history(user_id, limit)


@router.get("/{match_id}", response_model=Match)
async def get_match(match_id: str, engine: EngineDep) -> Match:
    return await engine.rematches.get_match(match_id)


@router.post("/{match_id}/gifts", response_model=Match)
async def send_gift(
    match_id: str, body: GiftRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Match:
    data = body.model_dump(exclude_none=True)
    event = GiftEvent(match_id=match_id, sender_id=user_id, **data)
    return await engine.matches.record_gift(event)


@router.post("/{match_id}/duration", response_model=Match)
async def submit_duration(
    match_id: str, body: DurationRequest, engine: EngineDep, user_id: CurrentUserDep
) -> Match:
    return await engine.matches.submit_duration(match_id, user_id, body.minutes)


@router.post("/{match_id}/end", response_model=Match)
async def end_match(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Match:
    match = await engine.matches.get_match(match_id)
    if match.leader_team(user_id) is None:
        raise PermissionDenied("Only team leaders can end the match")
    return await engine.matches.end_match(match_id)


@router.post("/{match_id}/decline", response_model=Match)
async def decline_match(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Match:
    return await engine.lobbies.decline_match(match_id, user_id)


@router.post("/{match_id}/leave", response_model=Match)
async def leave_match(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Match:
    return await engine.matches.leave_match(match_id, user_id)


@router.get("/{match_id}/rewards", response_model=list[Reward])
async def get_rewards(match_id: str, engine: EngineDep) -> list[Reward]:
    return await engine.rewards.get_rewards(match_id)


@router.post("/{match_id}/rematch", response_model=Match)
async def request_rematch(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Match:
    return await engine.rematches.request_rematch(match_id, user_id)


@router.delete("/{match_id}/rematch", response_model=Match)
async def cancel_rematch(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Match:
    return await engine.rematches.cancel_rematch(match_id, user_id)


@router.post("/{match_id}/rematch/decline", response_model=Match)
async def decline_rematch(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> Match:
    return await engine.rematches.decline_rematch(match_id, user_id)


@router.post("/{match_id}/exit", response_model=BattleExit)
async def end_battle(match_id: str, engine: EngineDep, user_id: CurrentUserDep) -> BattleExit:
    return await engine.rematches.end_battle(match_id, user_id)
