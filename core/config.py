from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    server_bind: str = "0.0.0.0"
    server_port: int | None = 8000
    server_debug: bool = False
    log_level: str = "INFO"

    # None keeps everything in process memory (development and tests)
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5

    # revenue split applied to gifted value
    creator_share: Decimal = Decimal("0.70")
    platform_share: Decimal = Decimal("0.30")
    premium_creator_share: Decimal = Decimal("0.78")
    premium_platform_share: Decimal = Decimal("0.22")
    premium_player_ids: set[str] = set()
    winner_bonus_multiplier: Decimal = Decimal("1.0")
    gift_score_weight: Decimal = Decimal("1")
    # per-gift score weight by catalog gift id; unknown gifts use gift_score_weight
    gift_weights: dict[str, Decimal] = {}

    decline_cooldown_seconds: int = 3 * 60
    rematch_request_ttl_seconds: int = 120
    invitation_ttl_seconds: int = 10 * 60
    match_duration_options: list[int] = [3, 6, 12, 22, 30]

    storage_retry_attempts: int = 3
    storage_retry_delay: float = 0.2
    conflict_retries: int = 5

    class Config:
        env_file = ".env"
        env_prefix = "battle_"
        extra = "ignore"

    def gift_weight(self, gift_id: str | None) -> Decimal:
        if gift_id is None:
            return self.gift_score_weight
        return self.gift_weights.get(gift_id, self.gift_score_weight)


settings = Settings()


def get_settings() -> Settings:
    return settings
