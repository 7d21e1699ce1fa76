import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.errors import NotFound
from core.models.invitation import PendingInvitations
from core.models.ws import WebSocketCloseCode
from core.serialization import pack_event
from core.types import Topic
from server.api.dependencies import get_ws_user_id
from server.services.broadcast import Subscription, lobby_topic, match_topic, user_topic
from server.services.engine import BattleEngine

logger = logging.getLogger(__name__)
router = APIRouter(tags=["WebSockets"])


async def _forward(websocket: WebSocket, sub: Subscription) -> None:
    async for event in sub:
        await websocket.send_bytes(pack_event(event))


async def _stream(
    websocket: WebSocket, engine: BattleEngine, topic: Topic, snapshot: BaseModel
) -> None:
    """Send the snapshot, then every event on ``topic`` until the client goes away."""
    async with engine.broadcaster.subscription(topic) as sub:
        await websocket.send_bytes(pack_event(snapshot))
        forward = asyncio.create_task(_forward(websocket, sub))
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            forward.cancel()
            await asyncio.gather(forward, return_exceptions=True)
    logger.info(f"WebSocket for {topic} closed")


@router.websocket("/matches/{match_id}")
async def match_ws(websocket: WebSocket, match_id: str) -> None:
    """Live score and lifecycle events of one match, msgpack encoded."""
    await websocket.accept()
    if get_ws_user_id(websocket) is None:
        await websocket.close(code=WebSocketCloseCode.UNAUTHORIZED)
        return

    engine: BattleEngine = websocket.app.state.engine
    match = await engine.matches.find_match(match_id)
    if match is None:
        await websocket.close(code=WebSocketCloseCode.NOT_FOUND)
        return

    await _stream(websocket, engine, match_topic(match_id), match)


@router.websocket("/lobbies/{lobby_id}")
async def lobby_ws(websocket: WebSocket, lobby_id: str) -> None:
    await websocket.accept()
    if get_ws_user_id(websocket) is None:
        await websocket.close(code=WebSocketCloseCode.UNAUTHORIZED)
        return

    engine: BattleEngine = websocket.app.state.engine
    try:
        lobby = await engine.lobbies.get_lobby(lobby_id)
    except NotFound:
        await websocket.close(code=WebSocketCloseCode.NOT_FOUND)
        return

    await _stream(websocket, engine, lobby_topic(lobby_id), lobby)


@router.websocket("/invitations")
async def invitations_ws(websocket: WebSocket) -> None:
    """Battle invitations addressed to the connected user."""
    await websocket.accept()
    user_id = get_ws_user_id(websocket)
    if user_id is None:
        await websocket.close(code=WebSocketCloseCode.UNAUTHORIZED)
        return

    engine: BattleEngine = websocket.app.state.engine
    pending = await engine.lobbies.get_pending_invitations(user_id)
    await _stream(websocket, engine, user_topic(user_id), PendingInvitations(invitations=pending))
