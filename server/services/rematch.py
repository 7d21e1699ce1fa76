import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from icecream import ic

from core.config import Settings
from core.errors import AlreadyInLobby, InvalidState, PermissionDenied
from core.models.lobby import Lobby, LobbyStatus, Team
from core.models.match import BattleExit, ExitKind, Match, MatchStatus, RematchState
from core.models.ws import BattleEndedEvent, RematchStartedEvent, RematchUpdatedEvent
from core.types import LobbyId, MatchId, UserId
from server.services.broadcast import Broadcaster, match_topic
from server.services.lobby import LobbyManager
from server.services.match import MatchEngine
from server.services.storage import BattleStore
from server.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class RematchNegotiator:
    """
    Post-match handshake between the two team leaders.

    ``none``/``expired`` -> one team pending -> ``both`` spawns a new lobby seeded
    with both rosters and starts a new match from it. A pending request older
    than ``rematch_request_ttl_seconds`` reads as ``expired``. ``declined`` and
    ``both`` are final for the old match.
    """

    def __init__(
        self,
        store: BattleStore,
        broadcaster: Broadcaster,
        lobbies: LobbyManager,
        matches: MatchEngine,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.lobbies = lobbies
        self.matches = matches
        self.settings = settings
        self.clock = clock
        self.retry = RetryPolicy(settings)

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.rematch_request_ttl_seconds)

    def _is_stale(self, match: Match) -> bool:
        return (
            match.rematch_requested_by.is_pending
            and match.rematch_requested_at is not None
            and self.clock() - match.rematch_requested_at >= self.ttl
        )

    async def get_match(self, match_id: MatchId) -> Match:
        """The match as clients should see it, with a stale request expired."""
        match = await self.matches.get_match(match_id)
        if not self._is_stale(match):
            return match
        return await self._transition(match_id, self._expire, "expire rematch")

    def _expire(self, match: Match) -> bool:
        if not self._is_stale(match):
            return False
        match.rematch_requested_by = RematchState.EXPIRED
        return True

    async def _transition(
        self, match_id: MatchId, apply: Callable[[Match], bool], label: str
    ) -> Match:
        """Re-read, apply, write back; publishes only when ``apply`` changed something."""
        changed = False

        async def attempt() -> Match:
            nonlocal changed
            match = await self.matches.get_match(match_id)
            changed = apply(match)
            if not changed:
                return match
            return await self.retry.transient(
                lambda: self.store.update_match(match), f"update match {match_id}"
            )

        match = await self.retry.conflicts(attempt, f"{label} {match_id}")
        if changed:
            logger.info(f"Match {match_id} rematch state: {match.rematch_requested_by.value}")
            await self.broadcaster.publish(
                match_topic(match_id),
                RematchUpdatedEvent(
                    match_id=match_id, rematch_requested_by=match.rematch_requested_by
                ),
            )
        return match

    async def _leader_team(self, match_id: MatchId, user_id: UserId) -> Team:
        match = await self.matches.get_match(match_id)
        team = match.leader_team(user_id)
        if team is None:
            raise PermissionDenied("Only team leaders can negotiate a rematch")
        return team

    async def request_rematch(self, match_id: MatchId, requester_id: UserId) -> Match:
        """
        Records a leader's rematch request.

        The second team's request spawns the rematch. When that spawn was cut
        short, any later request by either leader picks it up where it stopped.

        Raises:
            PermissionDenied: the requester leads neither team; nothing changes
            InvalidState: the match is not completed, declined or already rematched
        """
        team = await self._leader_team(match_id, requester_id)
        reached_both = False

        def request(match: Match) -> bool:
            nonlocal reached_both
            reached_both = False
            if not match.is_completed:
                raise InvalidState(f"Match {match_id} is {match.status.value}, not completed")
            self._expire(match)
            state = match.rematch_requested_by
            match state:
                case RematchState.NONE | RematchState.EXPIRED:
                    match.rematch_requested_by = RematchState.requested_by(team)
                case RematchState.TEAM_A | RematchState.TEAM_B:
                    if state is RematchState.requested_by(team):
                        return False
                    match.rematch_requested_by = RematchState.BOTH
                    match.rematch_lobby_id = str(uuid4())
                    reached_both = True
                case RematchState.BOTH if match.rematch_match_id is None:
                    # an earlier spawn stopped before the new match was linked
                    reached_both = True
                    if match.rematch_lobby_id is not None:
                        return False
                    match.rematch_lobby_id = str(uuid4())
                    return True
                case RematchState.BOTH | RematchState.DECLINED:
                    raise InvalidState(f"Rematch for {match_id} is already {state.value}")
            match.rematch_requested_at = self.clock()
            return True

        match = await self._transition(match_id, request, "request rematch")
        ic(match_id, requester_id, match.rematch_requested_by)
        if reached_both:
            match = await self._spawn_rematch(match)
        return match

    async def _spawn_rematch(self, match: Match) -> Match:
        lobby = await self._rematch_lobby(match)
        new_match = await self.lobbies.pair_lobbies(lobby.id, lobby.id, rematch_of=match.id)

        def link(current: Match) -> bool:
            if current.rematch_match_id == new_match.id:
                return False
            current.rematch_match_id = new_match.id
            return True

        async def attempt() -> Match:
            current = await self.matches.get_match(match.id)
            if not link(current):
                return current
            return await self.retry.transient(
                lambda: self.store.update_match(current), f"update match {match.id}"
            )

        linked = await self.retry.conflicts(attempt, f"link rematch {match.id}")
        logger.info(f"Rematch of {match.id} started as {new_match.id}")
        await self.broadcaster.publish(
            match_topic(match.id),
            RematchStartedEvent(
                match_id=match.id, new_match_id=new_match.id, new_lobby_id=lobby.id
            ),
        )
        return linked

    async def _rematch_lobby(self, match: Match) -> Lobby:
        """
        The private lobby seeded with both rosters, created on first use.

        A lobby left behind by an interrupted spawn is reused while it is still
        complete. One that lost a player is dissolved and the handshake resets.
        """
        lobby_id = match.rematch_lobby_id
        if lobby_id is None:
            raise InvalidState(f"Rematch for {match.id} has not been agreed")
        existing = await self.retry.transient(
            lambda: self.store.get_lobby(lobby_id), f"get lobby {lobby_id}"
        )
        if existing is None:
            return await self._insert_rematch_lobby(match, lobby_id)
        if existing.match_id is not None or (
            existing.status is LobbyStatus.OPEN and existing.is_full
        ):
            logger.info(f"Resuming rematch of {match.id} in lobby {lobby_id}")
            return existing

        await self.retry.transient(
            lambda: self.store.close_lobbies([lobby_id], LobbyStatus.DISSOLVED),
            f"dissolve lobby {lobby_id}",
        )
        await self._transition(match.id, self._reset, "reset rematch")
        raise InvalidState(f"Rematch lobby {lobby_id} lost a player; request the rematch again")

    async def _insert_rematch_lobby(self, match: Match, lobby_id: LobbyId) -> Lobby:
        origin = await self.retry.transient(
            lambda: self.store.get_lobby(match.lobby_a_id), f"get lobby {match.lobby_a_id}"
        )
        host_id = match.team_a_leader_id
        if origin is not None and origin.host_id in match.team_a_players:
            host_id = origin.host_id
        lobby = Lobby(
            id=lobby_id,
            format=match.format,
            host_id=host_id,
            team_a_players=list(match.team_a_players),
            team_b_players=list(match.team_b_players),
            team_a_leader_id=match.team_a_leader_id,
            team_b_leader_id=match.team_b_leader_id,
            is_private=True,
            return_to_solo_stream=origin.return_to_solo_stream if origin else False,
            original_stream_id=origin.original_stream_id if origin else None,
        )
        try:
            return await self.retry.transient(
                lambda: self.store.insert_lobby(lobby), f"rematch lobby for {match.id}"
            )
        except AlreadyInLobby:
            logger.warning(f"Rematch for {match.id} abandoned: a player joined another lobby")
            await self._transition(match.id, self._reset, "reset rematch")
            raise

    def _reset(self, match: Match) -> bool:
        if match.rematch_requested_by is RematchState.NONE:
            return False
        match.rematch_requested_by = RematchState.NONE
        match.rematch_requested_at = None
        match.rematch_lobby_id = None
        return True

    async def cancel_rematch(self, match_id: MatchId, requester_id: UserId) -> Match:
        """Withdraws the caller's own pending request, e.g. on leaving the result screen."""
        team = await self._leader_team(match_id, requester_id)

        def cancel(match: Match) -> bool:
            if match.rematch_requested_by is not RematchState.requested_by(team):
                return False
            return self._reset(match)

        return await self._transition(match_id, cancel, "cancel rematch")

    async def decline_rematch(self, match_id: MatchId, leader_id: UserId) -> Match:
        team = await self._leader_team(match_id, leader_id)

        def decline(match: Match) -> bool:
            if not match.is_completed:
                raise InvalidState(f"Match {match_id} is {match.status.value}, not completed")
            state = match.rematch_requested_by
            match state:
                case RematchState.DECLINED:
                    return False
                case RematchState.BOTH:
                    raise InvalidState(f"Rematch for {match_id} was already agreed")
                case (
                    RematchState.NONE
                    | RematchState.TEAM_A
                    | RematchState.TEAM_B
                    | RematchState.EXPIRED
                ):
                    match.rematch_requested_by = RematchState.DECLINED
                    match.rematch_requested_at = self.clock()
                    return True
            raise ValueError(f"Unhandled rematch state: {state!r}")

        match = await self._transition(match_id, decline, "decline rematch")
        logger.info(f"Rematch for {match_id} declined by {team.value}")
        return match

    async def end_battle(self, match_id: MatchId, user_id: UserId) -> BattleExit:
        """
        Leaves the battle for good and says where the caller goes next.

        Either leader may end it. Any participant may once their own leader has
        left the match. An active match is ended first; a pending rematch is
        declined and the lobbies are archived. The host of a lobby opened from a
        solo stream goes back to that stream; everyone else goes home.
        """
        match = await self.matches.get_match(match_id)
        team = match.team_of(user_id)
        if team is None:
            raise PermissionDenied(f"Player {user_id} is not playing in match {match_id}")
        is_leader = match.leader_team(user_id) is not None
        leader_gone = match.leader(team) in match.departed_player_ids
        if not (is_leader or leader_gone):
            raise PermissionDenied("Only a team leader can end the battle")
        if match.status is MatchStatus.CANCELLED:
            raise InvalidState(f"Match {match_id} was declined; its lobbies are back in play")

        if match.is_active:
            match = await self.matches.end_match(match_id)
        if match.rematch_requested_by not in (RematchState.BOTH, RematchState.DECLINED):
            match = await self.decline_rematch(match_id, match.leader(team))

        own_lobby_id = match.lobby_a_id if team is Team.TEAM_A else match.lobby_b_id
        archived = await self.retry.transient(
            lambda: self.store.close_lobbies(
                [match.lobby_a_id, match.lobby_b_id], LobbyStatus.ARCHIVED
            ),
            f"archive lobbies of {match_id}",
        )
        own_lobby = next((lobby for lobby in archived if lobby.id == own_lobby_id), None)
        if (
            own_lobby is not None
            and own_lobby.return_to_solo_stream
            and own_lobby.host_id == user_id
        ):
            destination = BattleExit(kind=ExitKind.STREAM, stream_id=own_lobby.original_stream_id)
        else:
            destination = BattleExit(kind=ExitKind.HOME)

        logger.info(f"Player {user_id} ended battle {match_id}, exit to {destination.kind.value}")
        await self.broadcaster.publish(
            match_topic(match_id),
            BattleEndedEvent(match_id=match_id, winner_team=match.winner_team, exit=destination),
        )
        return destination
