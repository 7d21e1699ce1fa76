"""Error taxonomy shared by the battle services and the HTTP layer."""

from datetime import timedelta


class BattleError(Exception):
    """Base class for every error raised by the battle engine."""

    code = "battle_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BattleError):
    """The request can never succeed as issued. Not retried."""

    code = "validation_error"


class UnsupportedFormat(ValidationError):
    code = "unsupported_format"


class LobbyFull(ValidationError):
    code = "lobby_full"


class AlreadyInLobby(ValidationError):
    code = "already_in_lobby"


class NotInLobby(ValidationError):
    code = "not_in_lobby"


class InvalidState(ValidationError):
    code = "invalid_state"


class MatchNotActive(InvalidState):
    code = "match_not_active"


class MatchmakingBlocked(ValidationError):
    code = "matchmaking_blocked"

    def __init__(self, message: str, cooldown_remaining: timedelta) -> None:
        super().__init__(message)
        self.cooldown_remaining = cooldown_remaining


class NotFound(BattleError):
    code = "not_found"


class PermissionDenied(BattleError):
    """A non-leader attempted a leader-only action. Not retried."""

    code = "permission_denied"


class ConflictError(BattleError):
    """A concurrent writer won; the loser re-applies against current state."""

    code = "conflict"


class TransientStorageError(BattleError):
    """The persistence boundary is unreachable; safe to retry."""

    code = "storage_unavailable"


class MatchmakingUnavailable(TransientStorageError):
    code = "matchmaking_unavailable"
