import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal
from typing import TypeAlias

from core.config import Settings
from core.errors import InvalidState, NotFound
from core.models.lobby import Team
from core.models.match import Match
from core.models.reward import RevenueSplit, Reward
from core.types import MatchId, UserId
from server.services.storage import BattleStore
from server.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

ORE = Decimal("0.01")

SplitResolver: TypeAlias = Callable[[UserId], RevenueSplit]


class StandardSplitPolicy:
    """70/30 for everyone, 78/22 for players on the premium list."""

    def __init__(self, settings: Settings) -> None:
        self.standard = RevenueSplit(
            creator_share=settings.creator_share, platform_share=settings.platform_share
        )
        self.premium = RevenueSplit(
            creator_share=settings.premium_creator_share,
            platform_share=settings.premium_platform_share,
        )
        self.premium_player_ids = frozenset(settings.premium_player_ids)

    def __call__(self, player_id: UserId) -> RevenueSplit:
        return self.premium if player_id in self.premium_player_ids else self.standard


class RewardDistributor:
    """Turns a completed match's gift totals into one payout row per participant."""

    def __init__(
        self,
        store: BattleStore,
        settings: Settings,
        split_resolver: SplitResolver | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.settings = settings
        self.split_resolver = split_resolver or StandardSplitPolicy(settings)
        self.clock = clock
        self.retry = RetryPolicy(settings)

    async def get_rewards(self, match_id: MatchId) -> list[Reward]:
        return await self.retry.transient(
            lambda: self.store.get_rewards(match_id), f"get rewards {match_id}"
        )

    async def distribute_rewards(self, match_id: MatchId) -> list[Reward]:
        """
        Pays out a completed match exactly once.

        Args:
            match_id: ID of the completed match

        Returns:
            list[Reward]: the stored rewards; a repeated call returns the same rows

        Raises:
            NotFound: unknown match
            InvalidState: the match is still active or was cancelled
        """
        match = await self.retry.transient(
            lambda: self.store.get_match(match_id), f"get match {match_id}"
        )
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        rewards, _ = await self.distribute(match)
        return rewards

    async def distribute(self, match: Match) -> tuple[list[Reward], bool]:
        """Like ``distribute_rewards`` but also reports whether rows were written."""
        if not match.is_completed:
            raise InvalidState(f"Match {match.id} is {match.status.value}, not completed")

        existing = await self.get_rewards(match.id)
        if existing:
            return existing, False

        rewards = self.compute_rewards(match)
        stored, created = await self.retry.transient(
            lambda: self.store.insert_rewards(match.id, rewards), f"insert rewards {match.id}"
        )
        if created:
            total = sum((r.reward_amount_sek for r in stored), Decimal("0"))
            logger.info(f"Rewards for match {match.id}: {len(stored)} players, {total} SEK")
        return stored, created

    def compute_rewards(self, match: Match) -> list[Reward]:
        """
        Pro-rata payout per player.

        A player's share of the team total is ``player_gifts / team_total``; the
        payout is ``team_total * share * creator_share``, multiplied by the winner
        bonus for the winning side and rounded down to whole öre.
        """
        now = self.clock()
        rewards: list[Reward] = []
        for team in Team:
            team_total = match.total_gifts(team)
            is_winner = match.winner_team is not None and match.winner_team.includes(team)
            for player_id in match.players(team):
                split = self.split_resolver(player_id)
                # team_total * (player_gifts / team_total), without the division
                contributed = match.player_gifts_sek.get(player_id, Decimal("0"))
                if team_total <= 0:
                    contributed = Decimal("0")
                amount = contributed * split.creator_share
                if is_winner:
                    amount *= self.settings.winner_bonus_multiplier
                rewards.append(
                    Reward(
                        match_id=match.id,
                        player_id=player_id,
                        team=team,
                        reward_amount_sek=amount.quantize(ORE, rounding=ROUND_DOWN),
                        is_winner=is_winner,
                        creator_share=split.creator_share,
                        created_at=now,
                    )
                )
        return rewards
