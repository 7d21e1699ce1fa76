"""Topic fan-out to connected sessions."""

from decimal import Decimal

from core.models.match import RematchState
from core.models.ws import BattleEvent, RematchUpdatedEvent, ScoreUpdatedEvent
from core.serialization import pack_event, unpack_event
from server.services.broadcast import Broadcaster, lobby_topic, match_topic


def score_event(match_id: str = "M1", team_a: str = "1") -> ScoreUpdatedEvent:
    return ScoreUpdatedEvent(
        match_id=match_id,
        team_a_score=Decimal(team_a),
        team_b_score=Decimal("0"),
        team_a_total_gifts_sek=Decimal(team_a),
        team_b_total_gifts_sek=Decimal("0"),
    )


def test_topics_are_namespaced() -> None:
    assert match_topic("x") == "match:x"
    assert lobby_topic("x") == "lobby:x"
    assert match_topic("x") != lobby_topic("x")


async def test_publish_reaches_only_topic_subscribers() -> None:
    broadcaster = Broadcaster()
    first = broadcaster.subscribe(match_topic("M1"))
    second = broadcaster.subscribe(match_topic("M1"))
    other = broadcaster.subscribe(match_topic("M2"))

    delivered = await broadcaster.publish(match_topic("M1"), score_event())

    assert delivered == 2
    assert (await first.get()) == (await second.get())
    assert other.queue.empty()


async def test_publish_without_subscribers() -> None:
    assert await Broadcaster().publish(match_topic("M1"), score_event()) == 0


async def test_closed_subscription_is_detached() -> None:
    broadcaster = Broadcaster()
    sub = broadcaster.subscribe(match_topic("M1"))
    sub.close()
    sub.close()

    assert broadcaster.subscriber_count(match_topic("M1")) == 0
    assert await broadcaster.publish(match_topic("M1"), score_event()) == 0
    assert await sub.get() is None


async def test_subscription_context_manager() -> None:
    broadcaster = Broadcaster()
    async with broadcaster.subscription(lobby_topic("L1")) as sub:
        assert broadcaster.subscriber_count(lobby_topic("L1")) == 1
    assert sub.closed
    assert broadcaster.subscriber_count(lobby_topic("L1")) == 0


async def test_slow_subscriber_is_dropped() -> None:
    broadcaster = Broadcaster(queue_size=1)
    slow = broadcaster.subscribe(match_topic("M1"))

    assert await broadcaster.publish(match_topic("M1"), score_event(team_a="1")) == 1
    assert await broadcaster.publish(match_topic("M1"), score_event(team_a="2")) == 0

    assert slow.closed
    assert broadcaster.subscriber_count(match_topic("M1")) == 0
    # what was queued before the drop is still readable
    received = [event async for event in slow]
    assert [e.team_a_score for e in received] == [Decimal("1")]


async def test_iteration_stops_on_close_all() -> None:
    broadcaster = Broadcaster()
    sub = broadcaster.subscribe(match_topic("M1"))
    await broadcaster.publish(match_topic("M1"), score_event())
    broadcaster.close_all()

    received = [event async for event in sub]
    assert len(received) == 1


def test_packed_event_round_trips_through_the_union() -> None:
    event = RematchUpdatedEvent(match_id="M1", rematch_requested_by=RematchState.BOTH)

    payload = unpack_event(pack_event(event))

    assert payload["event"] == "rematch_updated"
    assert payload["rematch_requested_by"] == "both"
    decoded = BattleEvent.validate_python(payload)
    assert isinstance(decoded, RematchUpdatedEvent)
    assert decoded.event_id == event.event_id


def test_packed_decimals_are_strings() -> None:
    payload = unpack_event(pack_event(score_event(team_a="12.50")))
    assert payload["event"] == "score_updated"
    assert payload["team_a_score"] == "12.50"
