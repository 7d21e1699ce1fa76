import logging
from collections.abc import Callable
from datetime import UTC, datetime

from core.config import Settings
from server.services.broadcast import Broadcaster
from server.services.gate import MatchmakingGate
from server.services.lobby import LobbyManager
from server.services.match import MatchEngine
from server.services.rematch import RematchNegotiator
from server.services.rewards import RewardDistributor, SplitResolver
from server.services.storage import BattleStore, create_store

logger = logging.getLogger(__name__)


class BattleEngine:
    """
    The battle services wired around one store and one broadcaster.

    Built once per process (see ``server.app``) and handed to whoever needs it.
    Tests build their own around a ``MemoryBattleStore``.
    """

    def __init__(
        self,
        settings: Settings,
        store: BattleStore | None = None,
        broadcaster: Broadcaster | None = None,
        split_resolver: SplitResolver | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.settings = settings
        self.store = store or create_store(settings)
        self.broadcaster = broadcaster or Broadcaster()
        self.gate = MatchmakingGate(self.store, settings, clock)
        self.rewards = RewardDistributor(self.store, settings, split_resolver, clock)
        self.matches = MatchEngine(
            self.store, self.broadcaster, self.rewards, self.gate, settings, clock
        )
        self.lobbies = LobbyManager(
            self.store, self.broadcaster, self.gate, self.matches, settings, clock
        )
        self.rematches = RematchNegotiator(
            self.store, self.broadcaster, self.lobbies, self.matches, settings, clock
        )

    async def start(self) -> None:
        await self.store.connect()
        logger.info(f"Battle engine started on {type(self.store).__name__}")

    async def shutdown(self) -> None:
        await self.matches.shutdown()
        self.broadcaster.close_all()
        await self.store.close()
        logger.info("Battle engine stopped")
