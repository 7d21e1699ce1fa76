"""asyncpg-backed store for the managed Postgres (Supabase) database."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

import asyncpg

from core.errors import (
    AlreadyInLobby,
    ConflictError,
    InvalidState,
    MatchNotActive,
    NotFound,
    TransientStorageError,
)
from core.models.invitation import Invitation, InvitationStatus
from core.models.lobby import BattleFormat, Lobby, LobbyStatus, Team
from core.models.match import GiftEvent, Match, MatchStatus
from core.models.matchmaking import MatchmakingBlock
from core.models.reward import Reward
from core.types import InvitationId, LobbyId, MatchId, UserId
from server.services.storage.base import BattleStore, WinnerResolver

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS battle_lobbies (
    id TEXT PRIMARY KEY,
    format TEXT NOT NULL,
    status TEXT NOT NULL,
    is_private BOOLEAN NOT NULL DEFAULT FALSE,
    host_id TEXT NOT NULL,
    team_a_players TEXT[] NOT NULL DEFAULT '{}',
    team_b_players TEXT[] NOT NULL DEFAULT '{}',
    team_a_leader_id TEXT,
    team_b_leader_id TEXT,
    return_to_solo_stream BOOLEAN NOT NULL DEFAULT FALSE,
    original_stream_id TEXT,
    match_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    searching_since TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS battle_lobbies_searching_idx
    ON battle_lobbies (format, searching_since) WHERE status = 'searching';

CREATE TABLE IF NOT EXISTS battle_invitations (
    id TEXT PRIMARY KEY,
    lobby_id TEXT NOT NULL REFERENCES battle_lobbies (id),
    inviter_id TEXT NOT NULL,
    invitee_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TIMESTAMPTZ NOT NULL,
    responded_at TIMESTAMPTZ,
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS battle_invitations_invitee_idx
    ON battle_invitations (invitee_id, status);

CREATE TABLE IF NOT EXISTS battle_player_bookings (
    user_id TEXT PRIMARY KEY,
    lobby_id TEXT NOT NULL REFERENCES battle_lobbies (id)
);

CREATE TABLE IF NOT EXISTS battle_matches (
    id TEXT PRIMARY KEY,
    lobby_a_id TEXT NOT NULL REFERENCES battle_lobbies (id),
    lobby_b_id TEXT NOT NULL REFERENCES battle_lobbies (id),
    format TEXT NOT NULL,
    team_a_players TEXT[] NOT NULL,
    team_b_players TEXT[] NOT NULL,
    team_a_leader_id TEXT NOT NULL,
    team_b_leader_id TEXT NOT NULL,
    team_a_score NUMERIC NOT NULL DEFAULT 0,
    team_b_score NUMERIC NOT NULL DEFAULT 0,
    team_a_total_gifts_sek NUMERIC NOT NULL DEFAULT 0,
    team_b_total_gifts_sek NUMERIC NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    winner_team TEXT,
    rematch_requested_by TEXT NOT NULL DEFAULT 'none',
    rematch_requested_at TIMESTAMPTZ,
    rematch_lobby_id TEXT,
    rematch_match_id TEXT,
    rematch_of_match_id TEXT,
    duration_minutes INTEGER,
    team_a_duration_vote INTEGER,
    team_b_duration_vote INTEGER,
    departed_player_ids TEXT[] NOT NULL DEFAULT '{}',
    declined_by TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    ended_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0
);

ALTER TABLE battle_matches ADD COLUMN IF NOT EXISTS rematch_lobby_id TEXT;
ALTER TABLE battle_matches ADD COLUMN IF NOT EXISTS declined_by TEXT;

CREATE TABLE IF NOT EXISTS battle_gift_events (
    event_id TEXT NOT NULL,
    match_id TEXT NOT NULL REFERENCES battle_matches (id),
    sender_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    team TEXT NOT NULL,
    amount_sek NUMERIC NOT NULL,
    score NUMERIC NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (match_id, event_id)
);

CREATE TABLE IF NOT EXISTS battle_rewards (
    match_id TEXT NOT NULL REFERENCES battle_matches (id),
    player_id TEXT NOT NULL,
    team TEXT NOT NULL,
    reward_amount_sek NUMERIC NOT NULL,
    is_winner BOOLEAN NOT NULL,
    creator_share NUMERIC NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (match_id, player_id)
);

CREATE TABLE IF NOT EXISTS battle_matchmaking_blocks (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    blocked_until TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS battle_matchmaking_blocks_user_idx
    ON battle_matchmaking_blocks (user_id, blocked_until);
"""

_LOBBY_COLUMNS = (
    "id, format, status, is_private, host_id, team_a_players, team_b_players, "
    "team_a_leader_id, team_b_leader_id, return_to_solo_stream, original_stream_id, "
    "match_id, created_at, updated_at, searching_since, version"
)

_MATCH_COLUMNS = (
    "id, lobby_a_id, lobby_b_id, format, team_a_players, team_b_players, "
    "team_a_leader_id, team_b_leader_id, team_a_score, team_b_score, "
    "team_a_total_gifts_sek, team_b_total_gifts_sek, status, winner_team, "
    "rematch_requested_by, rematch_requested_at, rematch_lobby_id, rematch_match_id, "
    "rematch_of_match_id, duration_minutes, team_a_duration_vote, team_b_duration_vote, "
    "departed_player_ids, declined_by, started_at, ended_at, version"
)

_REWARD_COLUMNS = "match_id, player_id, team, reward_amount_sek, is_winner, creator_share, created_at"

_INVITATION_COLUMNS = (
    "id, lobby_id, inviter_id, invitee_id, status, created_at, responded_at, expires_at"
)

# Per-recipient totals are derived from the event log instead of a jsonb column
_PLAYER_GIFTS_SQL = (
    "SELECT recipient_id, SUM(amount_sek) AS total FROM battle_gift_events "
    "WHERE match_id = $1 GROUP BY recipient_id"
)

_STORAGE_ERRORS = (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError)


def _lobby(row: asyncpg.Record) -> Lobby:
    data = dict(row)
    data["team_a_players"] = list(data["team_a_players"] or [])
    data["team_b_players"] = list(data["team_b_players"] or [])
    return Lobby(**data)


class PostgresBattleStore(BattleStore):
    """Pure SQL operations for the battle tables."""

    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 5) -> None:
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("Database pool already initialized")
            return
        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url, min_size=self.min_size, max_size=self.max_size
            )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"Could not connect to database: {e}") from e
        await self.ensure_schema()
        logger.info(f"Database pool created (size={self.min_size}-{self.max_size})")

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("Database pool closed")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def _fetch_match(
        self, conn: asyncpg.Connection, match_id: MatchId, lock: bool = False
    ) -> Match | None:
        suffix = " FOR UPDATE" if lock else ""
        row = await conn.fetchrow(
            f"SELECT {_MATCH_COLUMNS} FROM battle_matches WHERE id = $1{suffix}", match_id
        )
        if row is None:
            return None
        data = dict(row)
        data["team_a_players"] = list(data["team_a_players"])
        data["team_b_players"] = list(data["team_b_players"])
        data["departed_player_ids"] = list(data["departed_player_ids"] or [])
        gifts = await conn.fetch(_PLAYER_GIFTS_SQL, match_id)
        data["player_gifts_sek"] = {r["recipient_id"]: Decimal(r["total"]) for r in gifts}
        return Match(**data)

    async def _require_match(self, conn: asyncpg.Connection, match_id: MatchId) -> Match:
        match = await self._fetch_match(conn, match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        return match

    # ── Lobbies ──────────────────────────────────────────────────────

    async def insert_lobby(self, lobby: Lobby) -> Lobby:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO battle_lobbies ({_LOBBY_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                    RETURNING {_LOBBY_COLUMNS}
                    """,
                    *self._lobby_values(lobby),
                )
                for uid in lobby.members:
                    booked = await conn.fetchval(
                        "INSERT INTO battle_player_bookings (user_id, lobby_id) VALUES ($1, $2) "
                        "ON CONFLICT (user_id) DO NOTHING RETURNING lobby_id",
                        uid,
                        lobby.id,
                    )
                    if booked is None:
                        # rolls back the lobby row and earlier bookings
                        raise AlreadyInLobby(f"Player {uid} is already in another lobby")
                return _lobby(row)
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"insert_lobby failed: {e}") from e

    def _lobby_values(self, lobby: Lobby) -> list[Any]:
        return [
            lobby.id,
            lobby.format.value,
            lobby.status.value,
            lobby.is_private,
            lobby.host_id,
            lobby.team_a_players,
            lobby.team_b_players,
            lobby.team_a_leader_id,
            lobby.team_b_leader_id,
            lobby.return_to_solo_stream,
            lobby.original_stream_id,
            lobby.match_id,
            lobby.created_at,
            lobby.updated_at,
            lobby.searching_since,
            lobby.version,
        ]

    async def get_lobby(self, lobby_id: LobbyId) -> Lobby | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_LOBBY_COLUMNS} FROM battle_lobbies WHERE id = $1", lobby_id
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"get_lobby failed: {e}") from e
        return _lobby(row) if row else None

    async def update_lobby(self, lobby: Lobby) -> Lobby:
        try:
            async with self.pool.acquire() as conn:
                return await self._update_lobby(conn, lobby)
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"update_lobby failed: {e}") from e

    async def _update_lobby(self, conn: asyncpg.Connection, lobby: Lobby) -> Lobby:
        row = await conn.fetchrow(
            f"""
            UPDATE battle_lobbies SET
                status = $3, is_private = $4, host_id = $5, team_a_players = $6,
                team_b_players = $7, team_a_leader_id = $8, team_b_leader_id = $9,
                match_id = $10, searching_since = $11, updated_at = NOW(), version = version + 1
            WHERE id = $1 AND version = $2
            RETURNING {_LOBBY_COLUMNS}
            """,
            lobby.id,
            lobby.version,
            lobby.status.value,
            lobby.is_private,
            lobby.host_id,
            lobby.team_a_players,
            lobby.team_b_players,
            lobby.team_a_leader_id,
            lobby.team_b_leader_id,
            lobby.match_id,
            lobby.searching_since,
        )
        if row is None:
            exists = await conn.fetchval("SELECT 1 FROM battle_lobbies WHERE id = $1", lobby.id)
            if not exists:
                raise NotFound(f"Lobby {lobby.id} not found")
            raise ConflictError(f"Lobby {lobby.id} changed since v{lobby.version}")
        return _lobby(row)

    async def list_searching_lobbies(self, format: BattleFormat) -> list[Lobby]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {_LOBBY_COLUMNS} FROM battle_lobbies "
                    "WHERE format = $1 AND status = 'searching' "
                    "ORDER BY searching_since ASC, created_at ASC",
                    format.value,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"list_searching_lobbies failed: {e}") from e
        return [_lobby(row) for row in rows]

    async def find_active_lobby(self, user_id: UserId) -> Lobby | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {', '.join('l.' + c.strip() for c in _LOBBY_COLUMNS.split(','))} "
                    "FROM battle_player_bookings b JOIN battle_lobbies l ON l.id = b.lobby_id "
                    "WHERE b.user_id = $1",
                    user_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"find_active_lobby failed: {e}") from e
        return _lobby(row) if row else None

    async def close_lobbies(self, lobby_ids: Sequence[LobbyId], status: LobbyStatus) -> list[Lobby]:
        ids = list(dict.fromkeys(lobby_ids))
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                await conn.execute(
                    "UPDATE battle_lobbies SET status = $2, updated_at = NOW(), version = version + 1 "
                    "WHERE id = ANY($1) AND (status IN ('open', 'searching', 'paired') OR $2 = 'archived')",
                    ids,
                    status.value,
                )
                await conn.execute("DELETE FROM battle_player_bookings WHERE lobby_id = ANY($1)", ids)
                rows = await conn.fetch(
                    f"SELECT {_LOBBY_COLUMNS} FROM battle_lobbies WHERE id = ANY($1)", ids
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"close_lobbies failed: {e}") from e
        return [_lobby(row) for row in rows]

    # ── Invitations ──────────────────────────────────────────────────

    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO battle_invitations ({_INVITATION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING {_INVITATION_COLUMNS}
                    """,
                    invitation.id,
                    invitation.lobby_id,
                    invitation.inviter_id,
                    invitation.invitee_id,
                    invitation.status.value,
                    invitation.created_at,
                    invitation.responded_at,
                    invitation.expires_at,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"insert_invitation failed: {e}") from e
        return Invitation(**dict(row))

    async def get_invitation(self, invitation_id: InvitationId) -> Invitation | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_INVITATION_COLUMNS} FROM battle_invitations WHERE id = $1",
                    invitation_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"get_invitation failed: {e}") from e
        return Invitation(**dict(row)) if row else None

    async def respond_invitation(
        self, invitation_id: InvitationId, status: InvitationStatus, responded_at: datetime
    ) -> tuple[Invitation, bool]:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE battle_invitations SET status = $2, responded_at = $3
                    WHERE id = $1 AND status = 'pending'
                    RETURNING {_INVITATION_COLUMNS}
                    """,
                    invitation_id,
                    status.value,
                    responded_at,
                )
                if row is not None:
                    return Invitation(**dict(row)), True
                row = await conn.fetchrow(
                    f"SELECT {_INVITATION_COLUMNS} FROM battle_invitations WHERE id = $1",
                    invitation_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"respond_invitation failed: {e}") from e
        if row is None:
            raise NotFound(f"Invitation {invitation_id} not found")
        return Invitation(**dict(row)), False

    async def list_pending_invitations(self, user_id: UserId, now: datetime) -> list[Invitation]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {_INVITATION_COLUMNS} FROM battle_invitations "
                    "WHERE invitee_id = $1 AND status = 'pending' AND expires_at > $2 "
                    "ORDER BY created_at DESC",
                    user_id,
                    now,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"list_pending_invitations failed: {e}") from e
        return [Invitation(**dict(row)) for row in rows]

    # ── Bookings ─────────────────────────────────────────────────────

    async def claim_booking(self, user_id: UserId, lobby_id: LobbyId) -> bool:
        try:
            async with self.pool.acquire() as conn:
                booked = await conn.fetchval(
                    """
                    INSERT INTO battle_player_bookings (user_id, lobby_id) VALUES ($1, $2)
                    ON CONFLICT (user_id) DO UPDATE SET lobby_id = battle_player_bookings.lobby_id
                    RETURNING lobby_id
                    """,
                    user_id,
                    lobby_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"claim_booking failed: {e}") from e
        return booked == lobby_id

    async def release_booking(self, user_id: UserId, lobby_id: LobbyId) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "DELETE FROM battle_player_bookings WHERE user_id = $1 AND lobby_id = $2",
                    user_id,
                    lobby_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"release_booking failed: {e}") from e

    # ── Matches ──────────────────────────────────────────────────────

    async def create_match(self, match: Match, lobbies: Sequence[Lobby]) -> Match:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                for lobby in {lobby.id: lobby for lobby in lobbies}.values():
                    paired = lobby.model_copy(
                        update={"status": LobbyStatus.PAIRED, "match_id": match.id}
                    )
                    await self._update_lobby(conn, paired)
                await conn.execute(
                    f"""
                    INSERT INTO battle_matches ({_MATCH_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                            $15, $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26, $27)
                    """,
                    match.id,
                    match.lobby_a_id,
                    match.lobby_b_id,
                    match.format.value,
                    match.team_a_players,
                    match.team_b_players,
                    match.team_a_leader_id,
                    match.team_b_leader_id,
                    match.team_a_score,
                    match.team_b_score,
                    match.team_a_total_gifts_sek,
                    match.team_b_total_gifts_sek,
                    match.status.value,
                    match.winner_team.value if match.winner_team else None,
                    match.rematch_requested_by.value,
                    match.rematch_requested_at,
                    match.rematch_lobby_id,
                    match.rematch_match_id,
                    match.rematch_of_match_id,
                    match.duration_minutes,
                    match.team_a_duration_vote,
                    match.team_b_duration_vote,
                    match.departed_player_ids,
                    match.declined_by,
                    match.started_at,
                    match.ended_at,
                    match.version,
                )
                return await self._require_match(conn, match.id)
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"create_match failed: {e}") from e

    async def get_match(self, match_id: MatchId) -> Match | None:
        try:
            async with self.pool.acquire() as conn:
                return await self._fetch_match(conn, match_id)
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"get_match failed: {e}") from e

    async def update_match(self, match: Match) -> Match:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                updated = await conn.fetchval(
                    """
                    UPDATE battle_matches SET
                        rematch_requested_by = $3, rematch_requested_at = $4,
                        rematch_lobby_id = $5, rematch_match_id = $6, duration_minutes = $7,
                        team_a_duration_vote = $8, team_b_duration_vote = $9,
                        departed_player_ids = $10, version = version + 1
                    WHERE id = $1 AND version = $2
                    RETURNING id
                    """,
                    match.id,
                    match.version,
                    match.rematch_requested_by.value,
                    match.rematch_requested_at,
                    match.rematch_lobby_id,
                    match.rematch_match_id,
                    match.duration_minutes,
                    match.team_a_duration_vote,
                    match.team_b_duration_vote,
                    match.departed_player_ids,
                )
                if updated is None:
                    if await self._fetch_match(conn, match.id) is None:
                        raise NotFound(f"Match {match.id} not found")
                    raise ConflictError(f"Match {match.id} changed since v{match.version}")
                return await self._require_match(conn, match.id)
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"update_match failed: {e}") from e

    async def apply_gift(self, event: GiftEvent, team: Team, score: Decimal) -> Match | None:
        prefix = "team_a" if team is Team.TEAM_A else "team_b"
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                # row lock orders this increment against complete_match
                status = await conn.fetchval(
                    "SELECT status FROM battle_matches WHERE id = $1 FOR UPDATE", event.match_id
                )
                if status is None:
                    raise NotFound(f"Match {event.match_id} not found")
                if status != "active":
                    raise MatchNotActive(f"Match {event.match_id} is {status}")
                inserted = await conn.fetchval(
                    """
                    INSERT INTO battle_gift_events
                        (event_id, match_id, sender_id, recipient_id, team, amount_sek, score)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (match_id, event_id) DO NOTHING
                    RETURNING event_id
                    """,
                    event.event_id,
                    event.match_id,
                    event.sender_id,
                    event.recipient_id,
                    team.value,
                    event.amount_sek,
                    score,
                )
                if inserted is None:
                    return None
                await conn.execute(
                    f"UPDATE battle_matches SET {prefix}_score = {prefix}_score + $2, "
                    f"{prefix}_total_gifts_sek = {prefix}_total_gifts_sek + $3, "
                    "version = version + 1 WHERE id = $1",
                    event.match_id,
                    score,
                    event.amount_sek,
                )
                return await self._fetch_match(conn, event.match_id)
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"apply_gift failed: {e}") from e

    async def complete_match(
        self, match_id: MatchId, resolve: WinnerResolver, ended_at: datetime
    ) -> tuple[Match, bool]:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                match = await self._fetch_match(conn, match_id, lock=True)
                if match is None:
                    raise NotFound(f"Match {match_id} not found")
                if not match.is_active:
                    return match, False
                winner = resolve(match.team_a_score, match.team_b_score)
                await conn.execute(
                    "UPDATE battle_matches SET status = 'completed', winner_team = $2, "
                    "ended_at = $3, version = version + 1 WHERE id = $1",
                    match_id,
                    winner.value,
                    ended_at,
                )
                return await self._require_match(conn, match_id), True
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"complete_match failed: {e}") from e

    async def cancel_match(
        self, match_id: MatchId, declined_by: UserId, ended_at: datetime
    ) -> tuple[Match, bool]:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                # same row lock as apply_gift, so no gift lands between check and cancel
                match = await self._fetch_match(conn, match_id, lock=True)
                if match is None:
                    raise NotFound(f"Match {match_id} not found")
                if match.status is MatchStatus.CANCELLED:
                    return match, False
                if not match.is_active:
                    raise MatchNotActive(f"Match {match_id} is {match.status.value}")
                if match.team_a_total_gifts_sek or match.team_b_total_gifts_sek:
                    raise InvalidState(f"Match {match_id} is already under way")
                await conn.execute(
                    "UPDATE battle_matches SET status = 'cancelled', declined_by = $2, "
                    "ended_at = $3, version = version + 1 WHERE id = $1",
                    match_id,
                    declined_by,
                    ended_at,
                )
                return await self._require_match(conn, match_id), True
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"cancel_match failed: {e}") from e

    async def list_matches_for_user(self, user_id: UserId, limit: int = 20) -> list[Match]:
        try:
            async with self.pool.acquire() as conn:
                ids = await conn.fetch(
                    "SELECT id FROM battle_matches "
                    "WHERE $1 = ANY(team_a_players) OR $1 = ANY(team_b_players) "
                    "ORDER BY started_at DESC LIMIT $2",
                    user_id,
                    limit,
                )
                matches = [await self._fetch_match(conn, row["id"]) for row in ids]
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"list_matches_for_user failed: {e}") from e
        return [m for m in matches if m is not None]

    # ── Rewards ──────────────────────────────────────────────────────

    async def get_rewards(self, match_id: MatchId) -> list[Reward]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {_REWARD_COLUMNS} FROM battle_rewards WHERE match_id = $1 "
                    "ORDER BY player_id",
                    match_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"get_rewards failed: {e}") from e
        return [Reward(**dict(row)) for row in rows]

    async def insert_rewards(
        self, match_id: MatchId, rewards: Sequence[Reward]
    ) -> tuple[list[Reward], bool]:
        try:
            async with self.pool.acquire() as conn, conn.transaction():
                # serialises concurrent distributors on the match row
                await conn.execute("SELECT 1 FROM battle_matches WHERE id = $1 FOR UPDATE", match_id)
                existing = await conn.fetchval(
                    "SELECT COUNT(*) FROM battle_rewards WHERE match_id = $1", match_id
                )
                if not existing:
                    await conn.executemany(
                        f"INSERT INTO battle_rewards ({_REWARD_COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, $6, $7) "
                        "ON CONFLICT (match_id, player_id) DO NOTHING",
                        [
                            (
                                r.match_id,
                                r.player_id,
                                r.team.value,
                                r.reward_amount_sek,
                                r.is_winner,
                                r.creator_share,
                                r.created_at,
                            )
                            for r in rewards
                        ],
                    )
                rows = await conn.fetch(
                    f"SELECT {_REWARD_COLUMNS} FROM battle_rewards WHERE match_id = $1 "
                    "ORDER BY player_id",
                    match_id,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"insert_rewards failed: {e}") from e
        return [Reward(**dict(row)) for row in rows], not existing

    # ── Matchmaking blocks ───────────────────────────────────────────

    async def get_active_block(self, user_id: UserId, now: datetime) -> MatchmakingBlock | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT user_id, reason, blocked_until, created_at "
                    "FROM battle_matchmaking_blocks "
                    "WHERE user_id = $1 AND blocked_until > $2 "
                    "ORDER BY blocked_until DESC LIMIT 1",
                    user_id,
                    now,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"get_active_block failed: {e}") from e
        return MatchmakingBlock(**dict(row)) if row else None

    async def insert_block(self, block: MatchmakingBlock) -> MatchmakingBlock:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "INSERT INTO battle_matchmaking_blocks (user_id, reason, blocked_until, created_at) "
                    "VALUES ($1, $2, $3, $4)",
                    block.user_id,
                    block.reason,
                    block.blocked_until,
                    block.created_at,
                )
        except _STORAGE_ERRORS as e:
            raise TransientStorageError(f"insert_block failed: {e}") from e
        return block
