from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ORIGINS = ["http://localhost:3000"]
POSTGRES_SCHEMES = ("postgres", "postgresql")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Rabble"
    api_prefix: str = "/api"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./rabble.db"
    cors_origins_raw: str | None = Field(default=None, alias="CORS_ORIGINS")
    db_init_max_retries: int = 5
    db_init_retry_interval_seconds: float = 2.0

    # Room setup
    room_code_length: int = 4
    max_room_users: int = 50
    max_nickname_length: int = 20

    # Game rules
    min_players: int = 4
    min_items: int = 4
    max_item_length: int = 50
    max_association_length: int = 30
    lightning_player_threshold: int = 15
    standard_round_cap: int = 10
    option_count: int = 4
    points_per_correct_guess: int = 10

    @field_validator("database_url")
    @classmethod
    def use_asyncpg_for_postgres(cls, value: str) -> str:
        scheme, separator, rest = value.partition("://")
        if separator and scheme in POSTGRES_SCHEMES:
            return f"postgresql+asyncpg://{rest}"
        return value

    @property
    def cors_origins(self) -> List[str]:
        """``CORS_ORIGINS`` as a comma-separated list."""
        origins = [origin.strip() for origin in (self.cors_origins_raw or "").split(",")]
        return [origin for origin in origins if origin] or DEFAULT_CORS_ORIGINS


@lru_cache
def get_settings() -> Settings:
    return Settings()
