from .engine import BattleEngine
from .gate import MatchmakingGate
from .lobby import LobbyManager
from .match import MatchEngine
from .rematch import RematchNegotiator
from .rewards import RewardDistributor

__all__ = [
    "BattleEngine",
    "LobbyManager",
    "MatchEngine",
    "MatchmakingGate",
    "RematchNegotiator",
    "RewardDistributor",
]
