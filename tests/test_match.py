"""Live scoring, completion, duration timers and match exits."""

import asyncio
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal

import pytest

from core.config import Settings
from core.errors import (
    InvalidState,
    MatchNotActive,
    PermissionDenied,
    TransientStorageError,
    ValidationError,
)
from core.models.lobby import LobbyStatus, Team
from core.models.match import GiftEvent, Match, MatchStatus, WinnerTeam
from core.models.reward import Reward
from core.models.ws import (
    BaseEvent,
    MatchCancelledEvent,
    MatchCompletedEvent,
    ScoreUpdatedEvent,
)
from core.types import MatchId, UserId
from server.services.broadcast import Subscription, match_topic
from server.services.engine import BattleEngine
from server.services.storage import MemoryBattleStore
from tests.helpers import FakeClock, gift, start_match


class LostAckStore(MemoryBattleStore):
    """Applies the first gift but reports the write as failed."""

    def __init__(self) -> None:
        super().__init__()
        self.dropped = 0

    async def apply_gift(self, event: GiftEvent, team: Team, score: Decimal) -> Match | None:
        result = await super().apply_gift(event, team, score)
        if self.dropped == 0:
            self.dropped += 1
            raise TransientStorageError("connection lost before the commit was acknowledged")
        return result


class FlakyRewardStore(MemoryBattleStore):
    """Fails the first ``failures`` reward writes."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def insert_rewards(
        self, match_id: MatchId, rewards: Sequence[Reward]
    ) -> tuple[list[Reward], bool]:
        if self.failures:
            self.failures -= 1
            raise TransientStorageError("reward write timed out")
        return await super().insert_rewards(match_id, rewards)


class YieldingStore(MemoryBattleStore):
    """Yields to the loop before each write so gifts interleave with completion."""

    async def apply_gift(self, event: GiftEvent, team: Team, score: Decimal) -> Match | None:
        await asyncio.sleep(0)
        return await super().apply_gift(event, team, score)

    async def complete_match(self, match_id, resolve, ended_at):
        await asyncio.sleep(0)
        return await super().complete_match(match_id, resolve, ended_at)


class GiftBeforeCancelStore(MemoryBattleStore):
    """Lands a gift between the caller's read and the cancellation."""

    async def cancel_match(
        self, match_id: MatchId, declined_by: UserId, ended_at: datetime
    ) -> tuple[Match, bool]:
        match = self.matches[match_id]
        event = GiftEvent(
            match_id=match_id,
            sender_id="viewer",
            recipient_id=match.team_a_players[0],
            amount_sek=Decimal("5"),
        )
        await super().apply_gift(event, Team.TEAM_A, Decimal("5"))
        return await super().cancel_match(match_id, declined_by, ended_at)


def drain(sub: Subscription) -> list[BaseEvent]:
    events = []
    while not sub.queue.empty():
        event = sub.queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


async def test_match_starts_with_lobby_leaders(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1", "U3"], ["U2", "U4"])

    assert match.status is MatchStatus.ACTIVE
    assert match.team_a_leader_id == "U1"
    assert match.team_b_leader_id == "U2"
    assert match.team_a_score == match.team_b_score == 0
    lobby = await engine.lobbies.get_lobby(match.lobby_a_id)
    assert lobby.status is LobbyStatus.PAIRED
    assert lobby.match_id == match.id


async def test_gift_scores_for_recipient_team(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1", "U3"], ["U2", "U4"])

    await gift(engine, match.id, "U3", "20")
    match = await gift(engine, match.id, "U4", "15.50")

    assert match.team_a_score == Decimal("20")
    assert match.team_b_score == Decimal("15.50")
    assert match.player_gifts_sek == {"U3": Decimal("20"), "U4": Decimal("15.50")}


async def test_catalog_weight_scales_score_only(settings: Settings, clock: FakeClock) -> None:
    weighted = settings.model_copy(update={"gift_weights": {"lion": Decimal("2")}})
    engine = BattleEngine(weighted, store=MemoryBattleStore(), clock=clock)
    match = await start_match(engine, ["U1"], ["U2"])

    await gift(engine, match.id, "U1", "10", gift_id="lion")
    match = await gift(engine, match.id, "U2", "10", gift_id="rose")

    assert match.team_a_score == Decimal("20")
    assert match.team_a_total_gifts_sek == Decimal("10")
    # unknown gifts fall back to the default weight
    assert match.team_b_score == Decimal("10")


async def test_concurrent_gifts_are_all_counted(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])

    await asyncio.gather(
        *(gift(engine, match.id, "U1", "1") for _ in range(25)),
        *(gift(engine, match.id, "U2", "2") for _ in range(25)),
    )

    match = await engine.matches.get_match(match.id)
    assert match.team_a_score == Decimal("25")
    assert match.team_b_score == Decimal("50")


async def test_replayed_gift_is_counted_once(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    sub = engine.broadcaster.subscribe(match_topic(match.id))

    await gift(engine, match.id, "U1", "10", event_id="evt-1")
    match = await gift(engine, match.id, "U1", "10", event_id="evt-1")

    assert match.team_a_score == Decimal("10")
    assert len([e for e in drain(sub) if isinstance(e, ScoreUpdatedEvent)]) == 1


async def test_gift_retried_after_lost_ack_is_counted_once(
    settings: Settings, clock: FakeClock
) -> None:
    store = LostAckStore()
    engine = BattleEngine(settings, store=store, clock=clock)
    match = await start_match(engine, ["U1"], ["U2"])

    match = await gift(engine, match.id, "U1", "40")

    assert store.dropped == 1
    assert match.team_a_score == Decimal("40")
    assert (await engine.matches.get_match(match.id)).team_a_score == Decimal("40")


async def test_gift_to_outsider_is_rejected(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    with pytest.raises(ValidationError):
        await gift(engine, match.id, "stranger", "5")


@pytest.mark.parametrize(
    ("team_a", "team_b", "winner"),
    [
        ("120", "95", WinnerTeam.TEAM_A),
        ("10", "10.01", WinnerTeam.TEAM_B),
        ("100", "100", WinnerTeam.DRAW),
        ("0", "0", WinnerTeam.DRAW),
    ],
)
async def test_end_match_resolves_winner(
    engine: BattleEngine, team_a: str, team_b: str, winner: WinnerTeam
) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await gift(engine, match.id, "U1", team_a)
    await gift(engine, match.id, "U2", team_b)

    match = await engine.matches.end_match(match.id)

    assert match.status is MatchStatus.COMPLETED
    assert match.winner_team is winner
    assert match.ended_at is not None


async def test_end_match_is_idempotent(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await gift(engine, match.id, "U1", "50")
    sub = engine.broadcaster.subscribe(match_topic(match.id))

    results = await asyncio.gather(*(engine.matches.end_match(match.id) for _ in range(3)))
    again = await engine.matches.end_match(match.id)

    assert {r.winner_team for r in [*results, again]} == {WinnerTeam.TEAM_A}
    assert len({r.ended_at for r in [*results, again]}) == 1
    completed = [e for e in drain(sub) if isinstance(e, MatchCompletedEvent)]
    assert len(completed) == 1
    assert len(completed[0].rewards) == 2
    assert len(await engine.rewards.get_rewards(match.id)) == 2


async def test_no_gifts_after_completion(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await engine.matches.end_match(match.id)

    with pytest.raises(MatchNotActive):
        await gift(engine, match.id, "U1", "5")
    assert (await engine.matches.get_match(match.id)).team_a_score == 0


async def test_players_are_free_after_match(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await engine.matches.end_match(match.id)

    lobby = await engine.lobbies.get_lobby(match.lobby_a_id)
    assert lobby.status is LobbyStatus.COMPLETED
    assert await engine.lobbies.get_active_lobby("U1") is None
    await engine.lobbies.create_lobby("U1", "1v1")


async def test_duration_needs_both_leaders_to_agree(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1", "U3"], ["U2", "U4"])

    with pytest.raises(ValidationError):
        await engine.matches.submit_duration(match.id, "U1", 7)
    with pytest.raises(PermissionDenied):
        await engine.matches.submit_duration(match.id, "U3", 6)

    match = await engine.matches.submit_duration(match.id, "U1", 6)
    assert match.duration_minutes is None
    match = await engine.matches.submit_duration(match.id, "U2", 12)
    assert match.duration_minutes is None
    assert match.id not in engine.matches.timers

    match = await engine.matches.submit_duration(match.id, "U2", 6)
    assert match.duration_minutes == 6
    assert match.id in engine.matches.timers

    # an agreed duration is final
    match = await engine.matches.submit_duration(match.id, "U1", 30)
    assert match.duration_minutes == 6


async def test_timer_needs_an_agreed_duration(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])

    with pytest.raises(InvalidState):
        engine.matches._arm_timer(match)
    assert match.id not in engine.matches.timers


async def test_timer_ends_match_at_deadline(engine: BattleEngine, clock: FakeClock) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await gift(engine, match.id, "U2", "3")
    clock.advance(3 * 60 + 1)

    await engine.matches.submit_duration(match.id, "U1", 3)
    await engine.matches.submit_duration(match.id, "U2", 3)
    timer = engine.matches.timers[match.id]
    await timer

    match = await engine.matches.get_match(match.id)
    assert match.status is MatchStatus.COMPLETED
    assert match.winner_team is WinnerTeam.TEAM_B
    assert match.id not in engine.matches.timers


async def test_ending_early_cancels_timer(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await engine.matches.submit_duration(match.id, "U1", 30)
    await engine.matches.submit_duration(match.id, "U2", 30)
    timer = engine.matches.timers[match.id]

    await engine.matches.end_match(match.id)
    await asyncio.gather(timer, return_exceptions=True)

    assert timer.done()
    assert match.id not in engine.matches.timers


async def test_decline_cancels_and_blocks_the_decliner(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    sub = engine.broadcaster.subscribe(match_topic(match.id))

    match = await engine.lobbies.decline_match(match.id, "U2")

    assert match.status is MatchStatus.CANCELLED
    assert match.winner_team is None
    assert match.declined_by == "U2"
    assert await engine.rewards.get_rewards(match.id) == []
    assert [type(e) for e in drain(sub)] == [MatchCancelledEvent]
    assert not (await engine.gate.can_create_lobby("U2")).allowed
    assert (await engine.gate.can_create_lobby("U1")).allowed

    with pytest.raises(MatchNotActive):
        await gift(engine, match.id, "U1", "5")
    ended = await engine.matches.end_match(match.id)
    assert ended.status is MatchStatus.CANCELLED
    assert await engine.rewards.get_rewards(match.id) == []


async def test_decline_is_repeatable_by_the_decliner_only(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1", "U3"], ["U2", "U4"])

    await engine.lobbies.decline_match(match.id, "U2")
    again = await engine.lobbies.decline_match(match.id, "U2")

    assert again.status is MatchStatus.CANCELLED
    with pytest.raises(MatchNotActive):
        await engine.lobbies.decline_match(match.id, "U1")


async def test_decline_after_gifts_is_refused(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1"], ["U2"])
    await gift(engine, match.id, "U1", "1")

    with pytest.raises(InvalidState):
        await engine.lobbies.decline_match(match.id, "U2")
    with pytest.raises(PermissionDenied):
        await engine.lobbies.decline_match(match.id, "stranger")
    assert (await engine.gate.can_create_lobby("U2")).allowed


async def test_gift_landing_during_decline_wins(settings: Settings, clock: FakeClock) -> None:
    store = GiftBeforeCancelStore()
    engine = BattleEngine(settings, store=store, clock=clock)
    match = await start_match(engine, ["U1"], ["U2"])

    with pytest.raises(InvalidState):
        await engine.lobbies.decline_match(match.id, "U2")

    match = await engine.matches.get_match(match.id)
    assert match.is_active
    assert match.team_a_total_gifts_sek == Decimal("5")
    assert (await engine.gate.can_create_lobby("U2")).allowed


async def test_reward_write_retried_after_scores_froze(
    settings: Settings, clock: FakeClock
) -> None:
    store = FlakyRewardStore(failures=settings.storage_retry_attempts)
    engine = BattleEngine(settings, store=store, clock=clock)
    match = await start_match(engine, ["U1"], ["U2"])
    await gift(engine, match.id, "U1", "30")
    await gift(engine, match.id, "U2", "10")
    sub = engine.broadcaster.subscribe(match_topic(match.id))

    with pytest.raises(TransientStorageError):
        await engine.matches.end_match(match.id)

    frozen = await engine.matches.get_match(match.id)
    assert frozen.status is MatchStatus.COMPLETED
    assert frozen.winner_team is WinnerTeam.TEAM_A
    assert await engine.rewards.get_rewards(match.id) == []
    with pytest.raises(MatchNotActive):
        await gift(engine, match.id, "U2", "100")

    retried = await engine.matches.end_match(match.id)

    assert retried.winner_team is WinnerTeam.TEAM_A
    assert retried.ended_at == frozen.ended_at
    rewards = await engine.rewards.get_rewards(match.id)
    assert {r.player_id: r.reward_amount_sek for r in rewards} == {
        "U1": Decimal("21.00"),
        "U2": Decimal("7.00"),
    }
    completed = [e for e in drain(sub) if isinstance(e, MatchCompletedEvent)]
    assert len(completed) == 1


async def test_gift_racing_end_is_counted_or_rejected(
    settings: Settings, clock: FakeClock
) -> None:
    engine = BattleEngine(settings, store=YieldingStore(), clock=clock)
    match = await start_match(engine, ["U1"], ["U2"])

    gifts = [gift(engine, match.id, "U1", "1") for _ in range(20)]
    outcomes = await asyncio.gather(
        *gifts[:10], engine.matches.end_match(match.id), *gifts[10:], return_exceptions=True
    )

    ended = outcomes.pop(10)
    assert isinstance(ended, Match)
    counted = [o for o in outcomes if isinstance(o, Match)]
    rejected = [o for o in outcomes if isinstance(o, MatchNotActive)]
    assert len(counted) + len(rejected) == 20
    assert counted and rejected

    final = await engine.matches.get_match(match.id)
    assert final.team_a_total_gifts_sek == len(counted)
    assert ended.team_a_score == final.team_a_score == len(counted)
    [reward] = [r for r in await engine.rewards.get_rewards(match.id) if r.player_id == "U1"]
    assert reward.reward_amount_sek == Decimal(len(counted)) * Decimal("0.70")


async def test_leave_match_is_recorded_once(engine: BattleEngine) -> None:
    match = await start_match(engine, ["U1", "U3"], ["U2", "U4"])

    await engine.matches.leave_match(match.id, "U1")
    match = await engine.matches.leave_match(match.id, "U1")

    assert match.departed_player_ids == ["U1"]
    assert match.is_active


async def test_history_lists_own_side(engine: BattleEngine, clock: FakeClock) -> None:
    first = await start_match(engine, ["U1"], ["U2"])
    await gift(engine, first.id, "U1", "50")
    await engine.matches.end_match(first.id)
    clock.advance(60)
    second = await start_match(engine, ["U2"], ["U1"])

    history = await engine.matches.list_history("U1")

    assert [s.match_id for s in history] == [second.id, first.id]
    latest, earlier = history
    assert latest.team is Team.TEAM_B
    assert latest.status is MatchStatus.ACTIVE
    assert latest.reward_amount_sek is None
    assert earlier.team is Team.TEAM_A
    assert earlier.is_leader
    assert earlier.winner_team is WinnerTeam.TEAM_A
    assert earlier.team_score == Decimal("50")
    assert earlier.reward_amount_sek == Decimal("35.00")
