from collections.abc import AsyncIterator

import pytest

from core.config import Settings
from server.services.engine import BattleEngine
from server.services.storage import MemoryBattleStore
from tests.helpers import FakeClock


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, storage_retry_delay=0.0, premium_player_ids=set())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryBattleStore:
    return MemoryBattleStore()


@pytest.fixture
async def engine(
    settings: Settings, store: MemoryBattleStore, clock: FakeClock
) -> AsyncIterator[BattleEngine]:
    battle_engine = BattleEngine(settings, store=store, clock=clock)
    await battle_engine.start()
    yield battle_engine
    await battle_engine.shutdown()
