import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from core.config import Settings
from core.errors import MatchmakingUnavailable, TransientStorageError
from core.models.matchmaking import GateDecision, MatchmakingBlock
from core.types import BlockReason, UserId
from server.services.storage import BattleStore
from server.utils.retry import retry_transient

logger = logging.getLogger(__name__)


class MatchmakingGate:
    """Decides whether a user may open a new lobby."""

    def __init__(
        self,
        store: BattleStore,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    async def can_create_lobby(self, user_id: UserId) -> GateDecision:
        """
        Checks the user's matchmaking block record.

        Args:
            user_id: ID of the user

        Returns:
            GateDecision: allowed, or denied with the time left on the block

        Raises:
            MatchmakingUnavailable: the block record could not be read; the
                caller must treat this as a denial
        """
        now = self.clock()
        try:
            block = await retry_transient(
                lambda: self.store.get_active_block(user_id, now),
                attempts=self.settings.storage_retry_attempts,
                delay=self.settings.storage_retry_delay,
                label=f"block lookup for {user_id}",
            )
        except TransientStorageError as e:
            logger.error(f"Matchmaking gate closed for {user_id}: {e}")
            raise MatchmakingUnavailable(
                "Could not verify matchmaking status, please try again."
            ) from e

        if block is None:
            return GateDecision(allowed=True)

        remaining = block.remaining(now)
        logger.info(f"Player {user_id} blocked from matchmaking for {remaining} ({block.reason})")
        return GateDecision(allowed=False, cooldown_remaining=remaining)

    async def record_decline(
        self, user_id: UserId, reason: BlockReason = "declined_match"
    ) -> MatchmakingBlock:
        """Blocks a user from matchmaking for the configured cooldown."""
        now = self.clock()
        block = MatchmakingBlock(
            user_id=user_id,
            reason=reason,
            blocked_until=now + timedelta(seconds=self.settings.decline_cooldown_seconds),
            created_at=now,
        )
        await retry_transient(
            lambda: self.store.insert_block(block),
            attempts=self.settings.storage_retry_attempts,
            delay=self.settings.storage_retry_delay,
            label=f"block insert for {user_id}",
        )
        logger.info(f"Player {user_id} blocked until {block.blocked_until} ({reason})")
        return block
