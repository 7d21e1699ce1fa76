from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, WebSocket, status

from core.types import UserId
from server.services.engine import BattleEngine


def get_engine(request: Request) -> BattleEngine:
    return request.app.state.engine


def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> UserId:
    """Caller identity, authenticated upstream by the managed backend."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id


def get_ws_user_id(websocket: WebSocket) -> UserId | None:
    return websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")


EngineDep = Annotated[BattleEngine, Depends(get_engine)]
CurrentUserDep = Annotated[UserId, Depends(get_current_user_id)]
