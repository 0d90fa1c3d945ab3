from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    telegram_bot_token: str = ""
    db_path: str = "splitchat.json"

    # HTTP service
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # Chat command pipeline
    pending_timeout_seconds: int = 300
    fuzzy_floor: float = 0.5
    near_tie_delta: float = 0.1
    max_candidates: int = 3
    budget_warning_percent: float = 80.0
    supersede_pending: bool = True
    currency_symbol: str = "$"
    recent_expenses_limit: int = 5


@lru_cache
def get_settings() -> Settings:
    return Settings()
