import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.abstract import App
from core.config import Settings
from core.errors import (
    BattleError,
    ConflictError,
    MatchmakingBlocked,
    NotFound,
    PermissionDenied,
    TransientStorageError,
    ValidationError,
)
from server.services.engine import BattleEngine

logger = logging.getLogger(__name__)


def _status_for(error: BattleError) -> int:
    match error:
        case MatchmakingBlocked():
            return status.HTTP_429_TOO_MANY_REQUESTS
        case ValidationError():
            return status.HTTP_400_BAD_REQUEST
        case NotFound():
            return status.HTTP_404_NOT_FOUND
        case PermissionDenied():
            return status.HTTP_403_FORBIDDEN
        case ConflictError():
            return status.HTTP_409_CONFLICT
        case TransientStorageError():
            return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def battle_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, BattleError):
        raise exc
    content: dict = {"detail": exc.message, "code": exc.code}
    headers: dict[str, str] = {}
    if isinstance(exc, MatchmakingBlocked):
        seconds = int(exc.cooldown_remaining.total_seconds())
        content["cooldown_remaining_seconds"] = seconds
        headers["Retry-After"] = str(seconds)
    code = _status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=code, content=content, headers=headers)


def create_app(settings: Settings, engine: BattleEngine | None = None) -> FastAPI:
    """Builds the HTTP app; the engine lives for the duration of the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        battle_engine = engine or BattleEngine(settings)
        await battle_engine.start()
        app.state.engine = battle_engine

        yield

        await battle_engine.shutdown()

    app = FastAPI(
        title="Roast Live Battles",
        description="Battle engine for Roast Live streams",
        version="1.0.0",
        docs_url="/docs" if settings.server_debug else None,
        redoc_url="/redoc" if settings.server_debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BattleError, battle_error_handler)

    from .api.invitations import router as invitations_router
    from .api.lobby import router as lobby_router
    from .api.match import router as match_router
    from .api.ws import router as ws_router

    app.include_router(lobby_router, prefix="/api/lobbies")
    app.include_router(invitations_router, prefix="/api/invitations")
    app.include_router(match_router, prefix="/api/matches")
    app.include_router(ws_router, prefix="/ws")
    return app


class ServerApp(App):
    name = "battle server"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.app = create_app(settings)

    def run(self) -> None:
        uvicorn.run(
            self.app,
            host=self.settings.server_bind,
            port=self.settings.server_port or 8000,
            log_level=self.settings.log_level.lower(),
        )


class SchemaApp(App):
    """Creates the battle tables on the configured database and exits."""

    name = "schema migration"

    def run(self) -> None:
        if not self.settings.database_url:
            raise SystemExit("BATTLE_DATABASE_URL is not set")
        asyncio.run(self._apply())

    async def _apply(self) -> None:
        from .services.storage.postgres import PostgresBattleStore

        store = PostgresBattleStore(self.settings.database_url or "")
        # connect() applies the schema
        await store.connect()
        await store.close()
        logger.info("Battle schema is up to date")
