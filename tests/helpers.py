from datetime import UTC, datetime, timedelta
from decimal import Decimal

from core.models.lobby import BattleFormat
from core.models.match import GiftEvent, Match
from server.services.engine import BattleEngine


class FakeClock:
    """Manually advanced clock shared by every service of an engine."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


async def start_match(
    engine: BattleEngine,
    team_a: list[str],
    team_b: list[str],
    format: BattleFormat | None = None,
    original_stream_id: str | None = None,
) -> Match:
    """Fills one private lobby with both rosters; the last join starts the match."""
    format = format or BattleFormat(f"{len(team_a)}v{len(team_a)}")
    lobby = await engine.lobbies.create_lobby(
        team_a[0], format, is_private=True, original_stream_id=original_stream_id
    )
    for user_id in team_a[1:]:
        await engine.lobbies.join_lobby(lobby.id, user_id)
    for user_id in team_b:
        lobby = await engine.lobbies.join_lobby(lobby.id, user_id)
    assert lobby.match_id is not None
    return await engine.matches.get_match(lobby.match_id)


async def gift(
    engine: BattleEngine, match_id: str, recipient_id: str, amount: str, **kwargs: object
) -> Match:
    event = GiftEvent(
        match_id=match_id,
        sender_id="viewer",
        recipient_id=recipient_id,
        amount_sek=Decimal(amount),
        **kwargs,
    )
    return await engine.matches.record_gift(event)
