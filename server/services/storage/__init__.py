from core.config import Settings

from .base import BattleStore
from .memory import MemoryBattleStore


def create_store(settings: Settings) -> BattleStore:
    """Pick the backend from settings: Postgres when a database URL is set."""
    if settings.database_url:
        from .postgres import PostgresBattleStore

        return PostgresBattleStore(
            settings.database_url,
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
        )
    return MemoryBattleStore()


__all__ = ["BattleStore", "MemoryBattleStore", "create_store"]
