import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from icecream import ic

from core.config import Settings
from core.errors import (
    BattleError,
    InvalidState,
    MatchNotActive,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from core.models.lobby import Lobby, LobbyStatus, Team
from core.models.match import GiftEvent, Match, MatchStats, MatchStatus, resolve_winner
from core.models.ws import (
    DurationSetEvent,
    LobbyUpdatedEvent,
    MatchCancelledEvent,
    MatchCompletedEvent,
    MatchStartedEvent,
    ScoreUpdatedEvent,
)
from core.types import MatchId, UserId
from server.services.broadcast import Broadcaster, lobby_topic, match_topic
from server.services.gate import MatchmakingGate
from server.services.rewards import RewardDistributor
from server.services.storage import BattleStore
from server.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class MatchEngine:
    """Scores live matches, ends them, and keeps their duration timers."""

    def __init__(
        self,
        store: BattleStore,
        broadcaster: Broadcaster,
        rewards: RewardDistributor,
        gate: MatchmakingGate,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.rewards = rewards
        self.gate = gate
        self.settings = settings
        self.clock = clock
        self.retry = RetryPolicy(settings)
        self.timers: dict[MatchId, asyncio.Task] = {}

    async def find_match(self, match_id: MatchId) -> Match | None:
        return await self.retry.transient(
            lambda: self.store.get_match(match_id), f"get match {match_id}"
        )

    async def get_match(self, match_id: MatchId) -> Match:
        match = await self.find_match(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        return match

    async def start_match(self, match: Match, lobbies: Sequence[Lobby]) -> Match:
        """Stores an active match and marks its lobbies paired in one step."""
        stored = await self.retry.transient(
            lambda: self.store.create_match(match, lobbies), f"create match {match.id}"
        )
        ic(stored.id, stored.team_a_players, stored.team_b_players)
        logger.info(
            f"Match {stored.id} ({stored.format.value}) started: "
            f"{stored.team_a_players} vs {stored.team_b_players}"
        )
        event = MatchStartedEvent(match=stored)
        await self.broadcaster.publish(match_topic(stored.id), event)
        for lobby_id in dict.fromkeys((stored.lobby_a_id, stored.lobby_b_id)):
            await self.broadcaster.publish(lobby_topic(lobby_id), event)
        return stored

    async def record_gift(self, event: GiftEvent) -> Match:
        """
        Adds one gift to the recipient's team.

        The increment happens inside the store, so concurrent gifts never lose an
        update. A retried or replayed ``event_id`` is applied once. The score
        weight comes from the gift catalog in settings, keyed by ``gift_id``.

        Raises:
            ValidationError: the recipient is not playing in the match
            MatchNotActive: the match has already completed
        """
        match = await self.get_match(event.match_id)
        team = match.team_of(event.recipient_id)
        if team is None:
            raise ValidationError(
                f"Player {event.recipient_id} is not playing in match {match.id}"
            )
        if not match.is_active:
            raise MatchNotActive(f"Match {match.id} is {match.status.value}")

        score = event.score(self.settings.gift_weight(event.gift_id))
        updated = await self.retry.transient(
            lambda: self.store.apply_gift(event, team, score), f"gift {event.event_id}"
        )
        if updated is None:
            logger.debug(f"Duplicate gift {event.event_id} for match {match.id} ignored")
            return await self.get_match(match.id)

        ic(updated.id, team, score, updated.team_a_score, updated.team_b_score)
        await self.broadcaster.publish(
            match_topic(updated.id),
            ScoreUpdatedEvent(
                match_id=updated.id,
                team_a_score=updated.team_a_score,
                team_b_score=updated.team_b_score,
                team_a_total_gifts_sek=updated.team_a_total_gifts_sek,
                team_b_total_gifts_sek=updated.team_b_total_gifts_sek,
            ),
        )
        return updated

    async def end_match(self, match_id: MatchId) -> Match:
        """
        Completes a match: freeze scores, resolve the winner, pay out, release lobbies.

        Freezing and reading the final scores is one atomic store step. Calling
        it again on a completed match redoes nothing that already happened and
        returns the stored match with the same winner.
        A cancelled match is returned as it is.
        """
        match, transitioned = await self.retry.transient(
            lambda: self.store.complete_match(match_id, resolve_winner, self.clock()),
            f"complete match {match_id}",
        )
        self._cancel_timer(match_id)
        if match.status is MatchStatus.CANCELLED:
            return match
        if transitioned:
            logger.info(
                f"Match {match_id} completed: {match.team_a_score} vs {match.team_b_score}, "
                f"winner {match.winner_team.value if match.winner_team else None}"
            )

        rewards, created = await self.rewards.distribute(match)
        closed = await self.retry.transient(
            lambda: self.store.close_lobbies(
                [match.lobby_a_id, match.lobby_b_id], LobbyStatus.COMPLETED
            ),
            f"close lobbies of {match_id}",
        )

        if transitioned or created:
            await self.broadcaster.publish(
                match_topic(match_id), MatchCompletedEvent(match=match, rewards=rewards)
            )
            for lobby in closed:
                await self.broadcaster.publish(
                    lobby_topic(lobby.id), LobbyUpdatedEvent(lobby=lobby)
                )
        return match

    async def cancel_match(self, match_id: MatchId, user_id: UserId) -> Match:
        """
        Calls off a freshly paired match on behalf of a player who declined it.

        The no-gift check and the cancellation are one atomic store step, so a
        gift either lands first (and the decline is refused) or is rejected with
        MatchNotActive. The decliner gets a matchmaking cooldown. Repeating the
        call as the same player returns the cancelled match.

        Raises:
            PermissionDenied: the caller is not playing in the match
            InvalidState: a gift has already landed
            MatchNotActive: the match has completed, or another player declined it
        """
        match = await self.get_match(match_id)
        if match.team_of(user_id) is None:
            raise PermissionDenied(f"Player {user_id} is not playing in match {match_id}")

        match, transitioned = await self.retry.transient(
            lambda: self.store.cancel_match(match_id, user_id, self.clock()),
            f"cancel match {match_id}",
        )
        if match.declined_by != user_id:
            raise MatchNotActive(f"Match {match_id} was declined by another player")
        self._cancel_timer(match_id)

        await self.gate.record_decline(user_id)
        if transitioned:
            logger.info(f"Player {user_id} declined match {match_id}")
            await self.broadcaster.publish(match_topic(match_id), MatchCancelledEvent(match=match))
        return match

    async def submit_duration(self, match_id: MatchId, leader_id: UserId, minutes: int) -> Match:
        """
        Records a leader's duration vote; matching votes from both leaders set it.

        Once set, the timer ends the match at ``started_at + duration``.
        """
        if minutes not in self.settings.match_duration_options:
            raise ValidationError(
                f"Duration must be one of {self.settings.match_duration_options} minutes"
            )

        async def vote() -> Match:
            match = await self.get_match(match_id)
            if not match.is_active:
                raise MatchNotActive(f"Match {match_id} is {match.status.value}")
            team = match.leader_team(leader_id)
            if team is None:
                raise PermissionDenied("Only team leaders can choose the duration")
            if match.duration_minutes is not None:
                return match
            if team is Team.TEAM_A:
                match.team_a_duration_vote = minutes
            else:
                match.team_b_duration_vote = minutes
            if match.team_a_duration_vote == match.team_b_duration_vote:
                match.duration_minutes = minutes
            return await self.retry.transient(
                lambda: self.store.update_match(match), f"update match {match_id}"
            )

        match = await self.retry.conflicts(vote, f"duration vote {match_id}")
        if match.duration_minutes is not None and match_id not in self.timers:
            self._arm_timer(match)
            await self.broadcaster.publish(
                match_topic(match_id),
                DurationSetEvent(match_id=match_id, duration_minutes=match.duration_minutes),
            )
        return match

    def _arm_timer(self, match: Match) -> None:
        if match.duration_minutes is None:
            raise InvalidState(f"Match {match.id} has no agreed duration")
        deadline = match.started_at + timedelta(minutes=match.duration_minutes)
        seconds = max(0.0, (deadline - self.clock()).total_seconds())
        self.timers[match.id] = asyncio.create_task(
            self._end_match_after_timeout(match.id, seconds)
        )
        logger.info(f"Match {match.id} ends in {seconds:.0f}s")

    def _cancel_timer(self, match_id: MatchId) -> None:
        task = self.timers.pop(match_id, None)
        # the timer itself calls end_match; it must not cancel itself
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _end_match_after_timeout(self, match_id: MatchId, seconds: float) -> None:
        try:
            ic(f"Match {match_id} countdown: {seconds:.1f}s")
            await asyncio.sleep(seconds)
            logger.info(f"Match {match_id} time is up")
            await self.end_match(match_id)
        except asyncio.CancelledError:
            logger.debug(f"Timer for match {match_id} cancelled")
        except BattleError as e:
            ic(f"Error in timer: {type(e).__name__}", str(e))
            logger.error(f"Timer could not end match {match_id}: {e}")
        finally:
            if self.timers.get(match_id) is asyncio.current_task():
                del self.timers[match_id]

    async def leave_match(self, match_id: MatchId, user_id: UserId) -> Match:
        """Marks a participant as gone; a side without its leader may force the end."""

        async def leave() -> Match:
            match = await self.get_match(match_id)
            if match.team_of(user_id) is None:
                raise PermissionDenied(f"Player {user_id} is not playing in match {match_id}")
            if user_id in match.departed_player_ids:
                return match
            match.departed_player_ids.append(user_id)
            return await self.retry.transient(
                lambda: self.store.update_match(match), f"update match {match_id}"
            )

        match = await self.retry.conflicts(leave, f"leave match {match_id}")
        logger.info(f"Player {user_id} left match {match_id}")
        return match

    async def list_history(self, user_id: UserId, limit: int = 20) -> list[MatchStats]:
        matches = await self.retry.transient(
            lambda: self.store.list_matches_for_user(user_id, limit),
            f"history of {user_id}",
        )
        history: list[MatchStats] = []
        for match in matches:
            team = match.team_of(user_id)
            if team is None:
                continue
            rewards = await self.rewards.get_rewards(match.id)
            reward = next((r for r in rewards if r.player_id == user_id), None)
            history.append(
                MatchStats(
                    match_id=match.id,
                    format=match.format,
                    team=team,
                    is_leader=match.leader(team) == user_id,
                    status=match.status,
                    winner_team=match.winner_team,
                    team_score=match.score(team),
                    opponent_score=match.score(team.other),
                    reward_amount_sek=reward.reward_amount_sek if reward else None,
                    started_at=match.started_at,
                    ended_at=match.ended_at,
                )
            )
        return history

    async def shutdown(self) -> None:
        tasks = list(self.timers.values())
        self.timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Cancelled {len(tasks)} match timers")
