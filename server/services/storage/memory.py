"""In-process store. Default backend for development and the test-suite."""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal

from core.errors import AlreadyInLobby, ConflictError, InvalidState, MatchNotActive, NotFound
from core.models.invitation import Invitation, InvitationStatus
from core.models.lobby import BattleFormat, Lobby, LobbyStatus, Team
from core.models.match import GiftEvent, Match, MatchStatus
from core.models.matchmaking import MatchmakingBlock
from core.models.reward import Reward
from core.types import EventId, InvitationId, LobbyId, MatchId, UserId
from server.services.storage.base import BattleStore, WinnerResolver

logger = logging.getLogger(__name__)

# Fields owned by the scoring path; update_match never overwrites them.
_ACCUMULATOR_FIELDS = (
    "team_a_score",
    "team_b_score",
    "team_a_total_gifts_sek",
    "team_b_total_gifts_sek",
    "player_gifts_sek",
    "status",
    "winner_team",
    "ended_at",
    "declined_by",
)


class MemoryBattleStore(BattleStore):
    """Dict-backed rows guarded by a single asyncio lock."""

    def __init__(self) -> None:
        self.lobbies: dict[LobbyId, Lobby] = {}
        self.matches: dict[MatchId, Match] = {}
        self.invitations: dict[InvitationId, Invitation] = {}
        self.rewards: dict[MatchId, list[Reward]] = {}
        self.blocks: list[MatchmakingBlock] = []
        self.bookings: dict[UserId, LobbyId] = {}
        self.applied_events: dict[MatchId, set[EventId]] = {}
        # every write goes through this lock, so each method is one transaction
        self.lock = asyncio.Lock()

    # ── Lobbies ──────────────────────────────────────────────────────

    async def insert_lobby(self, lobby: Lobby) -> Lobby:
        async with self.lock:
            taken = [
                uid for uid in lobby.members if self.bookings.get(uid, lobby.id) != lobby.id
            ]
            if taken:
                raise AlreadyInLobby(f"Players already in another lobby: {', '.join(taken)}")
            for uid in lobby.members:
                self.bookings[uid] = lobby.id
            self.lobbies[lobby.id] = lobby.model_copy(deep=True)
            return lobby.model_copy(deep=True)

    async def get_lobby(self, lobby_id: LobbyId) -> Lobby | None:
        lobby = self.lobbies.get(lobby_id)
        return lobby.model_copy(deep=True) if lobby else None

    async def update_lobby(self, lobby: Lobby) -> Lobby:
        async with self.lock:
            return self._write_lobby(lobby)

    def _write_lobby(self, lobby: Lobby) -> Lobby:
        current = self.lobbies.get(lobby.id)
        if current is None:
            raise NotFound(f"Lobby {lobby.id} not found")
        if current.version != lobby.version:
            raise ConflictError(
                f"Lobby {lobby.id} changed (have v{lobby.version}, stored v{current.version})"
            )
        stored = lobby.model_copy(
            deep=True, update={"version": lobby.version + 1, "updated_at": datetime.now(UTC)}
        )
        self.lobbies[lobby.id] = stored
        return stored.model_copy(deep=True)

    async def list_searching_lobbies(self, format: BattleFormat) -> list[Lobby]:
        found = [
            lobby
            for lobby in self.lobbies.values()
            if lobby.format is format and lobby.status is LobbyStatus.SEARCHING
        ]
        found.sort(key=lambda lobby: (lobby.searching_since or lobby.created_at, lobby.created_at))
        return [lobby.model_copy(deep=True) for lobby in found]

    async def find_active_lobby(self, user_id: UserId) -> Lobby | None:
        lobby_id = self.bookings.get(user_id)
        if lobby_id is None:
            return None
        return await self.get_lobby(lobby_id)

    async def close_lobbies(self, lobby_ids: Sequence[LobbyId], status: LobbyStatus) -> list[Lobby]:
        closed: list[Lobby] = []
        async with self.lock:
            for lobby_id in dict.fromkeys(lobby_ids):
                lobby = self.lobbies.get(lobby_id)
                if lobby is None:
                    continue
                if lobby.status.is_active or status is LobbyStatus.ARCHIVED:
                    lobby = lobby.model_copy(
                        update={
                            "status": status,
                            "version": lobby.version + 1,
                            "updated_at": datetime.now(UTC),
                        }
                    )
                    self.lobbies[lobby_id] = lobby
                for uid in lobby.members:
                    if self.bookings.get(uid) == lobby_id:
                        del self.bookings[uid]
                closed.append(lobby.model_copy(deep=True))
        return closed

    # ── Invitations ──────────────────────────────────────────────────

    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        async with self.lock:
            self.invitations[invitation.id] = invitation.model_copy()
            return invitation.model_copy()

    async def get_invitation(self, invitation_id: InvitationId) -> Invitation | None:
        invitation = self.invitations.get(invitation_id)
        return invitation.model_copy() if invitation else None

    async def respond_invitation(
        self, invitation_id: InvitationId, status: InvitationStatus, responded_at: datetime
    ) -> tuple[Invitation, bool]:
        async with self.lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None:
                raise NotFound(f"Invitation {invitation_id} not found")
            if invitation.status is not InvitationStatus.PENDING:
                return invitation.model_copy(), False
            invitation.status = status
            invitation.responded_at = responded_at
            return invitation.model_copy(), True

    async def list_pending_invitations(self, user_id: UserId, now: datetime) -> list[Invitation]:
        found = [
            i for i in self.invitations.values() if i.invitee_id == user_id and i.is_open(now)
        ]
        found.sort(key=lambda i: i.created_at, reverse=True)
        return [i.model_copy() for i in found]

    # ── Bookings ─────────────────────────────────────────────────────

    async def claim_booking(self, user_id: UserId, lobby_id: LobbyId) -> bool:
        async with self.lock:
            current = self.bookings.setdefault(user_id, lobby_id)
            return current == lobby_id

    async def release_booking(self, user_id: UserId, lobby_id: LobbyId) -> None:
        async with self.lock:
            if self.bookings.get(user_id) == lobby_id:
                del self.bookings[user_id]

    # ── Matches ──────────────────────────────────────────────────────

    async def create_match(self, match: Match, lobbies: Sequence[Lobby]) -> Match:
        async with self.lock:
            for lobby in lobbies:
                current = self.lobbies.get(lobby.id)
                if current is None:
                    raise NotFound(f"Lobby {lobby.id} not found")
                if current.version != lobby.version:
                    raise ConflictError(f"Lobby {lobby.id} changed while pairing")
            for lobby in {lobby.id: lobby for lobby in lobbies}.values():
                paired = lobby.model_copy(
                    update={"status": LobbyStatus.PAIRED, "match_id": match.id}
                )
                self._write_lobby(paired)
            self.matches[match.id] = match.model_copy(deep=True)
            self.applied_events[match.id] = set()
            return match.model_copy(deep=True)

    async def get_match(self, match_id: MatchId) -> Match | None:
        match = self.matches.get(match_id)
        return match.model_copy(deep=True) if match else None

    async def update_match(self, match: Match) -> Match:
        async with self.lock:
            current = self.matches.get(match.id)
            if current is None:
                raise NotFound(f"Match {match.id} not found")
            if current.version != match.version:
                raise ConflictError(
                    f"Match {match.id} changed (have v{match.version}, stored v{current.version})"
                )
            update = {name: getattr(current, name) for name in _ACCUMULATOR_FIELDS}
            update["version"] = match.version + 1
            stored = match.model_copy(deep=True, update=update)
            self.matches[match.id] = stored
            return stored.model_copy(deep=True)

    async def apply_gift(self, event: GiftEvent, team: Team, score: Decimal) -> Match | None:
        async with self.lock:
            match = self.matches.get(event.match_id)
            if match is None:
                raise NotFound(f"Match {event.match_id} not found")
            if match.status is not MatchStatus.ACTIVE:
                raise MatchNotActive(f"Match {match.id} is {match.status.value}")
            seen = self.applied_events.setdefault(match.id, set())
            if event.event_id in seen:
                logger.debug(f"Gift event {event.event_id} already applied to {match.id}")
                return None
            seen.add(event.event_id)
            match.apply_gift(team, event.recipient_id, score, event.amount_sek)
            match.version += 1
            return match.model_copy(deep=True)

    async def complete_match(
        self, match_id: MatchId, resolve: WinnerResolver, ended_at: datetime
    ) -> tuple[Match, bool]:
        async with self.lock:
            match = self.matches.get(match_id)
            if match is None:
                raise NotFound(f"Match {match_id} not found")
            if not match.is_active:
                return match.model_copy(deep=True), False
            match.status = MatchStatus.COMPLETED
            match.winner_team = resolve(match.team_a_score, match.team_b_score)
            match.ended_at = ended_at
            match.version += 1
            return match.model_copy(deep=True), True

    async def cancel_match(
        self, match_id: MatchId, declined_by: UserId, ended_at: datetime
    ) -> tuple[Match, bool]:
        async with self.lock:
            match = self.matches.get(match_id)
            if match is None:
                raise NotFound(f"Match {match_id} not found")
            if match.status is MatchStatus.CANCELLED:
                return match.model_copy(deep=True), False
            if not match.is_active:
                raise MatchNotActive(f"Match {match_id} is {match.status.value}")
            if match.team_a_total_gifts_sek or match.team_b_total_gifts_sek:
                raise InvalidState(f"Match {match_id} is already under way")
            match.status = MatchStatus.CANCELLED
            match.declined_by = declined_by
            match.ended_at = ended_at
            match.version += 1
            return match.model_copy(deep=True), True

    async def list_matches_for_user(self, user_id: UserId, limit: int = 20) -> list[Match]:
        found = [m for m in self.matches.values() if user_id in m.participants]
        found.sort(key=lambda m: m.started_at, reverse=True)
        return [m.model_copy(deep=True) for m in found[:limit]]

    # ── Rewards ──────────────────────────────────────────────────────

    async def get_rewards(self, match_id: MatchId) -> list[Reward]:
        return [r.model_copy() for r in self.rewards.get(match_id, [])]

    async def insert_rewards(
        self, match_id: MatchId, rewards: Sequence[Reward]
    ) -> tuple[list[Reward], bool]:
        async with self.lock:
            created = match_id not in self.rewards
            if created:
                self.rewards[match_id] = [r.model_copy() for r in rewards]
            return [r.model_copy() for r in self.rewards[match_id]], created

    # ── Matchmaking blocks ───────────────────────────────────────────

    async def get_active_block(self, user_id: UserId, now: datetime) -> MatchmakingBlock | None:
        active = [b for b in self.blocks if b.user_id == user_id and b.is_active(now)]
        return max(active, key=lambda b: b.blocked_until, default=None)

    async def insert_block(self, block: MatchmakingBlock) -> MatchmakingBlock:
        async with self.lock:
            self.blocks.append(block)
            return block
