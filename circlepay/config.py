from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    telegram_bot_token: str = ""
    db_path: str = "circlepay.json"
    mini_app_url: str = ""
    admin_api_key: str = ""
    log_level: str = "INFO"

    # Daily reminder run (local time) and delay between consecutive sends
    reminder_hour: int = Field(default=12, ge=0, le=23)
    reminder_pacing_seconds: float = 0.1

    recent_messages_max: int = 100
    init_data_max_age_seconds: int = 86400


@lru_cache
def get_settings() -> Settings:
    return Settings()
