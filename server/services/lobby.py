import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from icecream import ic

from core.config import Settings
from core.errors import (
    AlreadyInLobby,
    InvalidState,
    LobbyFull,
    MatchmakingBlocked,
    NotFound,
    NotInLobby,
    PermissionDenied,
    UnsupportedFormat,
    ValidationError,
)
from core.models.invitation import Invitation, InvitationStatus
from core.models.lobby import BattleFormat, Lobby, LobbyStatus, Team
from core.models.match import Match
from core.models.ws import InvitationEvent, LobbyUpdatedEvent
from core.types import InvitationId, LobbyId, MatchId, UserId
from server.services.broadcast import Broadcaster, lobby_topic, user_topic
from server.services.gate import MatchmakingGate
from server.services.storage import BattleStore
from server.utils.retry import RetryPolicy

if TYPE_CHECKING:
    from server.services.match import MatchEngine

logger = logging.getLogger(__name__)

_PAIRABLE = (LobbyStatus.OPEN, LobbyStatus.SEARCHING)


def _drop_member(lobby: Lobby, user_id: UserId, team: Team) -> None:
    """Leadership moves to the side's next-joined member, hosting to team A's leader."""
    players = lobby.players(team)
    players.remove(user_id)
    if lobby.leader(team) == user_id:
        lobby.set_leader(team, players[0] if players else None)
    if lobby.host_id == user_id and lobby.team_a_leader_id is not None:
        lobby.host_id = lobby.team_a_leader_id


def parse_format(value: BattleFormat | str) -> BattleFormat:
    try:
        return BattleFormat(value)
    except ValueError as e:
        raise UnsupportedFormat(f"Unsupported battle format: {value!r}") from e


class LobbyManager:
    """
    Lobby lifecycle and the FIFO matchmaking queue.

    Lobby writes are optimistic: every mutation re-reads the lobby, applies the
    change and writes it back at the version it read, retrying on ConflictError.
    Booking a player is a separate atomic claim in the store, so two lobbies can
    never hold the same player even when their writes interleave.
    """

    def __init__(
        self,
        store: BattleStore,
        broadcaster: Broadcaster,
        gate: MatchmakingGate,
        matches: "MatchEngine",
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.gate = gate
        self.matches = matches
        self.settings = settings
        self.clock = clock
        self.retry = RetryPolicy(settings)
        # one pairing pass per format at a time
        self._queue_locks: dict[BattleFormat, asyncio.Lock] = {
            format: asyncio.Lock() for format in BattleFormat
        }

    async def get_lobby(self, lobby_id: LobbyId) -> Lobby:
        lobby = await self.retry.transient(
            lambda: self.store.get_lobby(lobby_id), f"get lobby {lobby_id}"
        )
        if lobby is None:
            raise NotFound(f"Lobby {lobby_id} not found")
        return lobby

    async def get_active_lobby(self, user_id: UserId) -> Lobby | None:
        return await self.retry.transient(
            lambda: self.store.find_active_lobby(user_id), f"active lobby of {user_id}"
        )

    async def _publish(self, lobby: Lobby) -> None:
        await self.broadcaster.publish(lobby_topic(lobby.id), LobbyUpdatedEvent(lobby=lobby))

    async def create_lobby(
        self,
        creator_id: UserId,
        format: BattleFormat | str,
        is_private: bool = False,
        original_stream_id: str | None = None,
    ) -> Lobby:
        """
        Opens a lobby with the creator as host and team A leader.

        Args:
            creator_id: ID of the creating user
            format: battle format tag, e.g. ``"2v2"``
            is_private: private lobbies are filled by invitation or shared id, never queued
            original_stream_id: solo stream to resume once the battle is over

        Returns:
            Lobby: the stored lobby, ``open``

        Raises:
            UnsupportedFormat: unknown format tag
            MatchmakingBlocked: the creator is on a matchmaking cooldown
            MatchmakingUnavailable: the block check could not be completed
            AlreadyInLobby: the creator is booked into another active lobby
        """
        battle_format = parse_format(format)
        decision = await self.gate.can_create_lobby(creator_id)
        if not decision.allowed:
            raise MatchmakingBlocked(
                f"Player {creator_id} is blocked from matchmaking",
                cooldown_remaining=decision.cooldown_remaining,
            )

        lobby = Lobby(
            format=battle_format,
            is_private=is_private,
            host_id=creator_id,
            team_a_players=[creator_id],
            team_a_leader_id=creator_id,
            return_to_solo_stream=original_stream_id is not None,
            original_stream_id=original_stream_id,
        )
        stored = await self.retry.transient(
            lambda: self.store.insert_lobby(lobby), f"create lobby for {creator_id}"
        )
        ic(stored.id, stored.format, creator_id)
        logger.info(f"Lobby {stored.id} ({stored.format.value}) created by {creator_id}")
        await self._publish(stored)
        return stored

    async def join_lobby(
        self, lobby_id: LobbyId, user_id: UserId, preferred_team: Team | None = None
    ) -> Lobby:
        """
        Seats a player on the preferred side, or the other side when it is full.

        The first player on an empty side becomes its leader. When both sides are
        full afterwards, the lobby pairs with itself and the match starts. A
        repeated join of a full lobby that is still open retries the pairing.
        """
        lobby = await self.get_lobby(lobby_id)
        if user_id in lobby.members:
            return await self._pair_if_full(lobby)

        claimed = await self.retry.transient(
            lambda: self.store.claim_booking(user_id, lobby_id), f"book {user_id}"
        )
        if not claimed:
            raise AlreadyInLobby(f"Player {user_id} is already in another lobby")

        try:
            joined = await self.retry.conflicts(
                lambda: self._join_once(lobby_id, user_id, preferred_team),
                f"join lobby {lobby_id}",
            )
        except Exception:
            await self.retry.transient(
                lambda: self.store.release_booking(user_id, lobby_id), f"release {user_id}"
            )
            raise

        logger.info(f"Player {user_id} joined lobby {lobby_id} on {joined.team_of(user_id)}")
        await self._publish(joined)
        return await self._pair_if_full(joined)

    async def _pair_if_full(self, lobby: Lobby) -> Lobby:
        if not (lobby.is_full and lobby.status is LobbyStatus.OPEN):
            return lobby
        await self.pair_lobbies(lobby.id, lobby.id)
        return await self.get_lobby(lobby.id)

    async def _join_once(
        self, lobby_id: LobbyId, user_id: UserId, preferred_team: Team | None
    ) -> Lobby:
        lobby = await self.get_lobby(lobby_id)
        if user_id in lobby.members:
            return lobby
        order = [preferred_team, preferred_team.other] if preferred_team else list(Team)
        team = next((t for t in order if lobby.has_room(t)), None)
        if team is None:
            raise LobbyFull(f"Lobby {lobby_id} is full")
        if lobby.status is not LobbyStatus.OPEN:
            raise InvalidState(f"Lobby {lobby_id} is {lobby.status.value}, not open")

        lobby.players(team).append(user_id)
        if lobby.leader(team) is None:
            lobby.set_leader(team, user_id)
        return await self.retry.transient(
            lambda: self.store.update_lobby(lobby), f"update lobby {lobby_id}"
        )

    async def leave_lobby(self, lobby_id: LobbyId, user_id: UserId) -> Lobby:
        """
        Removes a player from a lobby that has not been paired yet.

        Leadership moves to the next-joined member of the same side. A side left
        empty dissolves the lobby and every remaining player is released. A
        searching lobby that loses a member drops back to ``open``.
        """
        lobby, team = await self.retry.conflicts(
            lambda: self._leave_once(lobby_id, user_id), f"leave lobby {lobby_id}"
        )
        await self.retry.transient(
            lambda: self.store.release_booking(user_id, lobby_id), f"release {user_id}"
        )
        if not lobby.players(team):
            [lobby] = await self.retry.transient(
                lambda: self.store.close_lobbies([lobby_id], LobbyStatus.DISSOLVED),
                f"dissolve lobby {lobby_id}",
            )
            logger.info(f"Lobby {lobby_id} dissolved after {user_id} left")
        else:
            logger.info(f"Player {user_id} left lobby {lobby_id}")
        await self._publish(lobby)
        return lobby

    async def _leave_once(self, lobby_id: LobbyId, user_id: UserId) -> tuple[Lobby, Team]:
        lobby = await self.get_lobby(lobby_id)
        team = lobby.team_of(user_id)
        if team is None:
            raise NotInLobby(f"Player {user_id} is not in lobby {lobby_id}")
        if lobby.status not in _PAIRABLE:
            raise InvalidState(f"Cannot leave lobby {lobby_id} once it is {lobby.status.value}")

        _drop_member(lobby, user_id, team)
        if lobby.status is LobbyStatus.SEARCHING:
            lobby.status = LobbyStatus.OPEN
            lobby.searching_since = None
        stored = await self.retry.transient(
            lambda: self.store.update_lobby(lobby), f"update lobby {lobby_id}"
        )
        return stored, team

    async def promote_leader(
        self, lobby_id: LobbyId, acting_user_id: UserId, new_leader_id: UserId
    ) -> Lobby:
        """Hands a side's leadership to another member of that side."""

        async def promote() -> Lobby:
            lobby = await self.get_lobby(lobby_id)
            team = lobby.team_of(acting_user_id)
            if team is None or lobby.leader(team) != acting_user_id:
                raise PermissionDenied(f"Player {acting_user_id} does not lead a side")
            if new_leader_id not in lobby.players(team):
                raise NotInLobby(f"Player {new_leader_id} is not on {team.value}")
            if lobby.status not in _PAIRABLE:
                raise InvalidState(f"Lobby {lobby_id} is already {lobby.status.value}")
            lobby.set_leader(team, new_leader_id)
            return await self.retry.transient(
                lambda: self.store.update_lobby(lobby), f"update lobby {lobby_id}"
            )

        lobby = await self.retry.conflicts(promote, f"promote in lobby {lobby_id}")
        logger.info(f"Lobby {lobby_id}: {new_leader_id} promoted by {acting_user_id}")
        await self._publish(lobby)
        return lobby

    async def send_invitation(
        self, lobby_id: LobbyId, inviter_id: UserId, invitee_id: UserId
    ) -> Invitation:
        """
        Invites a user to take a free seat in an open lobby.

        The invitation is pushed live on the invitee's user topic and stays
        pending for ``invitation_ttl_seconds``.

        Raises:
            NotInLobby: the inviter is not a member of the lobby
            AlreadyInLobby: the invitee already sits in the lobby
            InvalidState: the lobby is no longer open
            LobbyFull: no seat is left
        """
        lobby = await self.get_lobby(lobby_id)
        if inviter_id not in lobby.members:
            raise NotInLobby(f"Player {inviter_id} is not in lobby {lobby_id}")
        if invitee_id in lobby.members:
            raise AlreadyInLobby(f"Player {invitee_id} is already in lobby {lobby_id}")
        if lobby.status is not LobbyStatus.OPEN:
            raise InvalidState(f"Lobby {lobby_id} is {lobby.status.value}, not open")
        if not any(lobby.has_room(team) for team in Team):
            raise LobbyFull(f"Lobby {lobby_id} is full")

        now = self.clock()
        invitation = Invitation(
            lobby_id=lobby_id,
            inviter_id=inviter_id,
            invitee_id=invitee_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.invitation_ttl_seconds),
        )
        stored = await self.retry.transient(
            lambda: self.store.insert_invitation(invitation), f"invite {invitee_id}"
        )
        ic(stored.id, lobby_id, inviter_id, invitee_id)
        logger.info(f"Player {inviter_id} invited {invitee_id} to lobby {lobby_id}")
        await self.broadcaster.publish(user_topic(invitee_id), InvitationEvent(invitation=stored))
        return stored

    async def _own_invitation(self, invitation_id: InvitationId, user_id: UserId) -> Invitation:
        invitation = await self.retry.transient(
            lambda: self.store.get_invitation(invitation_id), f"get invitation {invitation_id}"
        )
        if invitation is None:
            raise NotFound(f"Invitation {invitation_id} not found")
        if invitation.invitee_id != user_id:
            raise PermissionDenied(f"Invitation {invitation_id} is not addressed to {user_id}")
        return invitation

    async def _respond(
        self, invitation_id: InvitationId, status: InvitationStatus
    ) -> tuple[Invitation, bool]:
        return await self.retry.transient(
            lambda: self.store.respond_invitation(invitation_id, status, self.clock()),
            f"respond to invitation {invitation_id}",
        )

    async def accept_invitation(
        self, invitation_id: InvitationId, user_id: UserId, preferred_team: Team | None = None
    ) -> Lobby:
        """
        Seats the invitee in the inviting lobby, as ``join_lobby`` would.

        The invitation is marked accepted only once the seat is taken, so a
        retry after a failed write joins nothing twice.

        Raises:
            PermissionDenied: the invitation belongs to someone else
            InvalidState: the invitation was declined or has expired
        """
        invitation = await self._own_invitation(invitation_id, user_id)
        if invitation.status is InvitationStatus.ACCEPTED:
            return await self.get_lobby(invitation.lobby_id)
        if not invitation.is_open(self.clock()):
            if invitation.status is InvitationStatus.PENDING:
                invitation, _ = await self._respond(invitation_id, InvitationStatus.EXPIRED)
            raise InvalidState(f"Invitation {invitation_id} is {invitation.status.value}")

        lobby = await self.join_lobby(invitation.lobby_id, user_id, preferred_team)
        await self._respond(invitation_id, InvitationStatus.ACCEPTED)
        logger.info(f"Player {user_id} accepted invitation {invitation_id}")
        return lobby

    async def decline_invitation(self, invitation_id: InvitationId, user_id: UserId) -> Invitation:
        invitation = await self._own_invitation(invitation_id, user_id)
        status = InvitationStatus.DECLINED
        if invitation.status is InvitationStatus.PENDING and not invitation.is_open(self.clock()):
            status = InvitationStatus.EXPIRED
        invitation, _ = await self._respond(invitation_id, status)
        if invitation.status is not InvitationStatus.DECLINED:
            raise InvalidState(f"Invitation {invitation_id} is {invitation.status.value}")
        logger.info(f"Player {user_id} declined invitation {invitation_id}")
        return invitation

    async def get_pending_invitations(self, user_id: UserId) -> list[Invitation]:
        """Invitations still waiting on ``user_id``, newest first."""
        return await self.retry.transient(
            lambda: self.store.list_pending_invitations(user_id, self.clock()),
            f"invitations of {user_id}",
        )

    async def enter_matchmaking(self, lobby_id: LobbyId, user_id: UserId) -> Lobby:
        """
        Puts a staffed public lobby in the queue and runs a pairing pass.

        The lobby's team A must be full and team B empty; the opponent side
        comes from the counterpart lobby.
        """

        async def enter() -> Lobby:
            lobby = await self.get_lobby(lobby_id)
            if lobby.host_id != user_id:
                raise PermissionDenied("Only the host can start matchmaking")
            if lobby.status is LobbyStatus.SEARCHING:
                return lobby
            if lobby.status is not LobbyStatus.OPEN:
                raise InvalidState(f"Lobby {lobby_id} is {lobby.status.value}")
            if lobby.is_private:
                raise InvalidState("Private lobbies cannot enter matchmaking")
            if not lobby.is_squad_ready:
                raise InvalidState(
                    f"Team A needs {lobby.format.capacity} players and team B must be empty"
                )
            lobby.status = LobbyStatus.SEARCHING
            lobby.searching_since = self.clock()
            return await self.retry.transient(
                lambda: self.store.update_lobby(lobby), f"update lobby {lobby_id}"
            )

        lobby = await self.retry.conflicts(enter, f"enter matchmaking {lobby_id}")
        logger.info(f"Lobby {lobby_id} searching for a {lobby.format.value} opponent")
        await self._publish(lobby)
        await self.process_queue(lobby.format)
        return await self.get_lobby(lobby_id)

    async def cancel_matchmaking(self, lobby_id: LobbyId, user_id: UserId) -> Lobby:
        async def cancel() -> Lobby:
            lobby = await self.get_lobby(lobby_id)
            if lobby.host_id != user_id:
                raise PermissionDenied("Only the host can stop matchmaking")
            if lobby.status is not LobbyStatus.SEARCHING:
                raise InvalidState(f"Lobby {lobby_id} is not searching")
            lobby.status = LobbyStatus.OPEN
            lobby.searching_since = None
            return await self.retry.transient(
                lambda: self.store.update_lobby(lobby), f"update lobby {lobby_id}"
            )

        lobby = await self.retry.conflicts(cancel, f"cancel matchmaking {lobby_id}")
        logger.info(f"Lobby {lobby_id} left the matchmaking queue")
        await self._publish(lobby)
        return lobby

    async def process_queue(self, format: BattleFormat) -> list[Match]:
        """Pairs the oldest searching lobbies of ``format`` two at a time."""
        started: list[Match] = []
        async with self._queue_locks[format]:
            while True:
                searching = await self.retry.transient(
                    lambda: self.store.list_searching_lobbies(format),
                    f"list searching {format.value}",
                )
                if len(searching) < 2:
                    break
                first, second = searching[0], searching[1]
                try:
                    match = await self.pair_lobbies(first.id, second.id)
                except InvalidState as e:
                    # the lobby left the queue meanwhile; the next listing skips it
                    logger.warning(f"Skipping {first.id}/{second.id}: {e}")
                    continue
                started.append(match)
        if started:
            ic(format, len(started))
        return started

    async def pair_lobbies(
        self,
        lobby_a_id: LobbyId,
        lobby_b_id: LobbyId,
        rematch_of: MatchId | None = None,
    ) -> Match:
        """
        Promotes one full lobby, or two squad-ready lobbies, into an active match.

        Passing the same id twice pairs a lobby with itself: both of its sides
        play. Otherwise lobby A's team A faces lobby B's team A. Calling it again
        for lobbies that already share a match returns that match.

        Raises:
            ValidationError: formats differ
            InvalidState: a lobby is not ready to be paired
        """
        return await self.retry.conflicts(
            lambda: self._pair_once(lobby_a_id, lobby_b_id, rematch_of),
            f"pair {lobby_a_id}/{lobby_b_id}",
        )

    async def _pair_once(
        self, lobby_a_id: LobbyId, lobby_b_id: LobbyId, rematch_of: MatchId | None
    ) -> Match:
        lobby_a = await self.get_lobby(lobby_a_id)
        self_paired = lobby_a_id == lobby_b_id
        lobby_b = lobby_a if self_paired else await self.get_lobby(lobby_b_id)

        if lobby_a.match_id is not None and lobby_a.match_id == lobby_b.match_id:
            existing = await self.matches.find_match(lobby_a.match_id)
            if existing is not None:
                return existing

        if lobby_a.format is not lobby_b.format:
            raise ValidationError(
                f"Cannot pair {lobby_a.format.value} with {lobby_b.format.value}"
            )
        for lobby in (lobby_a, lobby_b):
            if lobby.status not in _PAIRABLE:
                raise InvalidState(f"Lobby {lobby.id} is {lobby.status.value}")

        if self_paired:
            if not lobby_a.is_full:
                raise InvalidState(f"Lobby {lobby_a.id} needs both sides full")
            team_b_players = list(lobby_a.team_b_players)
            team_b_leader = lobby_a.team_b_leader_id
        else:
            if not (lobby_a.is_squad_ready and lobby_b.is_squad_ready):
                raise InvalidState("Both lobbies need a full team A and an empty team B")
            team_b_players = list(lobby_b.team_a_players)
            team_b_leader = lobby_b.team_a_leader_id

        if lobby_a.team_a_leader_id is None or team_b_leader is None:
            raise InvalidState("Both sides need a leader")

        match = Match(
            lobby_a_id=lobby_a.id,
            lobby_b_id=lobby_b.id,
            format=lobby_a.format,
            team_a_players=list(lobby_a.team_a_players),
            team_b_players=team_b_players,
            team_a_leader_id=lobby_a.team_a_leader_id,
            team_b_leader_id=team_b_leader,
            rematch_of_match_id=rematch_of,
            started_at=self.clock(),
        )
        lobbies = [lobby_a] if self_paired else [lobby_a, lobby_b]
        return await self.matches.start_match(match, lobbies)

    async def decline_match(self, match_id: MatchId, user_id: UserId) -> Match:
        """
        Declines a freshly paired match and puts the lobbies back in play.

        The match is cancelled and the decliner is put on a cooldown, see
        ``MatchEngine.cancel_match``. The decliner then leaves their lobby under
        the ``leave_lobby`` rules and what remains of it reopens. The opposing
        public lobby of a queued pairing returns to ``searching`` at its old place
        in the queue, and a pairing pass runs for it.
        """
        match = await self.matches.cancel_match(match_id, user_id)
        team = match.team_of(user_id)
        self_paired = match.lobby_a_id == match.lobby_b_id
        own_lobby_id = match.lobby_a_id if team is Team.TEAM_A else match.lobby_b_id

        requeued = False
        for lobby_id in dict.fromkeys((match.lobby_a_id, match.lobby_b_id)):
            if lobby_id == own_lobby_id:
                side = team if self_paired and team is not None else Team.TEAM_A
                await self._release_decliner(lobby_id, match_id, user_id, side)
            else:
                lobby = await self.retry.conflicts(
                    lambda: self._unpair_once(lobby_id, match_id, user_id),
                    f"requeue lobby {lobby_id}",
                )
                await self._publish(lobby)
                requeued = requeued or lobby.status is LobbyStatus.SEARCHING

        if requeued:
            await self.process_queue(match.format)
        return match

    async def _release_decliner(
        self, lobby_id: LobbyId, match_id: MatchId, user_id: UserId, side: Team
    ) -> None:
        lobby = await self.retry.conflicts(
            lambda: self._unpair_once(lobby_id, match_id, user_id), f"reopen lobby {lobby_id}"
        )
        await self.retry.transient(
            lambda: self.store.release_booking(user_id, lobby_id), f"release {user_id}"
        )
        if lobby.status is LobbyStatus.OPEN and not lobby.players(side):
            [lobby] = await self.retry.transient(
                lambda: self.store.close_lobbies([lobby_id], LobbyStatus.DISSOLVED),
                f"dissolve lobby {lobby_id}",
            )
            logger.info(f"Lobby {lobby_id} dissolved after {user_id} declined")
        await self._publish(lobby)

    async def _unpair_once(
        self, lobby_id: LobbyId, match_id: MatchId, decliner_id: UserId
    ) -> Lobby:
        lobby = await self.get_lobby(lobby_id)
        if lobby.status is not LobbyStatus.PAIRED or lobby.match_id != match_id:
            return lobby
        lobby.match_id = None
        team = lobby.team_of(decliner_id)
        if team is not None:
            _drop_member(lobby, decliner_id, team)
            lobby.status = LobbyStatus.OPEN
            lobby.searching_since = None
        elif lobby.is_private:
            lobby.status = LobbyStatus.OPEN
        else:
            lobby.status = LobbyStatus.SEARCHING
            lobby.searching_since = lobby.searching_since or self.clock()
        return await self.retry.transient(
            lambda: self.store.update_lobby(lobby), f"update lobby {lobby_id}"
        )
