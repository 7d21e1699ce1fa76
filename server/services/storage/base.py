"""Persistence boundary for lobbies, invitations, matches, rewards and matchmaking blocks."""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import TypeAlias

from core.models.invitation import Invitation, InvitationStatus
from core.models.lobby import BattleFormat, Lobby, LobbyStatus, Team
from core.models.match import GiftEvent, Match, WinnerTeam
from core.models.matchmaking import MatchmakingBlock
from core.models.reward import Reward
from core.types import InvitationId, LobbyId, MatchId, UserId

WinnerResolver: TypeAlias = Callable[[Decimal, Decimal], WinnerTeam]


class BattleStore(ABC):
    """
    Row store used by the battle services.

    Every method may suspend and may raise TransientStorageError. Writes guarded
    by ``version`` raise ConflictError when another writer got there first.
    Returned models are detached copies; mutate them and write them back.
    """

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ── Lobbies ──────────────────────────────────────────────────────

    @abstractmethod
    async def insert_lobby(self, lobby: Lobby) -> Lobby:
        """Store a new lobby and book all of its members atomically.

        Raises AlreadyInLobby (booking nobody) if any member is booked elsewhere.
        """

    @abstractmethod
    async def get_lobby(self, lobby_id: LobbyId) -> Lobby | None: ...

    @abstractmethod
    async def update_lobby(self, lobby: Lobby) -> Lobby:
        """Write back a lobby read at ``lobby.version``; bumps the version."""

    @abstractmethod
    async def list_searching_lobbies(self, format: BattleFormat) -> list[Lobby]:
        """Searching lobbies of one format, oldest ``searching_since`` first."""

    @abstractmethod
    async def find_active_lobby(self, user_id: UserId) -> Lobby | None: ...

    @abstractmethod
    async def close_lobbies(self, lobby_ids: Sequence[LobbyId], status: LobbyStatus) -> list[Lobby]:
        """Move lobbies to an inactive status and release their members' bookings.

        Lobbies already in an inactive status keep it. Idempotent.
        """

    # ── Invitations ──────────────────────────────────────────────────

    @abstractmethod
    async def insert_invitation(self, invitation: Invitation) -> Invitation: ...

    @abstractmethod
    async def get_invitation(self, invitation_id: InvitationId) -> Invitation | None: ...

    @abstractmethod
    async def respond_invitation(
        self, invitation_id: InvitationId, status: InvitationStatus, responded_at: datetime
    ) -> tuple[Invitation, bool]:
        """Move a pending invitation to ``status``.

        An invitation that is no longer pending keeps its status. Returns the
        stored invitation and whether this call changed it.
        """

    @abstractmethod
    async def list_pending_invitations(self, user_id: UserId, now: datetime) -> list[Invitation]:
        """Unexpired pending invitations addressed to ``user_id``, newest first."""

    # ── Bookings ─────────────────────────────────────────────────────

    @abstractmethod
    async def claim_booking(self, user_id: UserId, lobby_id: LobbyId) -> bool:
        """Book a user into a lobby. False if booked into a different lobby."""

    @abstractmethod
    async def release_booking(self, user_id: UserId, lobby_id: LobbyId) -> None:
        """Drop the booking if it still points at ``lobby_id``."""

    # ── Matches ──────────────────────────────────────────────────────

    @abstractmethod
    async def create_match(self, match: Match, lobbies: Sequence[Lobby]) -> Match:
        """Insert ``match`` and mark ``lobbies`` paired with it, atomically.

        Each lobby is checked against its ``version``.
        """

    @abstractmethod
    async def get_match(self, match_id: MatchId) -> Match | None: ...

    @abstractmethod
    async def update_match(self, match: Match) -> Match:
        """Write back negotiation fields of a match read at ``match.version``.

        Scores, status and winner are never written through this method.
        """

    @abstractmethod
    async def apply_gift(self, event: GiftEvent, team: Team, score: Decimal) -> Match | None:
        """Accumulate one gift into an active match.

        Returns None when ``event.event_id`` was already applied. Raises
        MatchNotActive once the match has completed.
        """

    @abstractmethod
    async def complete_match(
        self, match_id: MatchId, resolve: WinnerResolver, ended_at: datetime
    ) -> tuple[Match, bool]:
        """Stop accepting gifts and resolve the winner in one atomic step.

        A match that is no longer active is returned unchanged.
        Returns the stored match and whether this call made the transition.
        """

    @abstractmethod
    async def cancel_match(
        self, match_id: MatchId, declined_by: UserId, ended_at: datetime
    ) -> tuple[Match, bool]:
        """Cancel an active match that no gift has reached yet, atomically.

        Raises InvalidState if any gift has been applied and MatchNotActive once
        the match has completed. A match already cancelled is returned as is.
        Returns the stored match and whether this call made the transition.
        """

    @abstractmethod
    async def list_matches_for_user(self, user_id: UserId, limit: int = 20) -> list[Match]: ...

    # ── Rewards ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_rewards(self, match_id: MatchId) -> list[Reward]: ...

    @abstractmethod
    async def insert_rewards(
        self, match_id: MatchId, rewards: Sequence[Reward]
    ) -> tuple[list[Reward], bool]:
        """Insert rewards only if the match has none yet.

        Returns the stored rows and whether this call wrote them.
        """

    # ── Matchmaking blocks ───────────────────────────────────────────

    @abstractmethod
    async def get_active_block(self, user_id: UserId, now: datetime) -> MatchmakingBlock | None:
        """Longest-running block still in force at ``now``."""

    @abstractmethod
    async def insert_block(self, block: MatchmakingBlock) -> MatchmakingBlock: ...
