from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./noxly.db"
    database_echo: bool = False

    # Internal API security (superadmin surfaces)
    admin_api_key: str = ""

    # Application URLs
    frontend_url: str = "http://localhost:5173"
    api_base_url: str = "http://localhost:8000"
    cors_allowed_origins: list[str] = Field(default_factory=list)

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _parse_origin_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Coupon redemption
    redemption_code_length: int = 6
    redemption_window_seconds: int = 3 * 60
    redemption_code_max_attempts: int = 5
    redemption_countdown_tick_seconds: float = 1.0
    redemption_feed_queue_size: int = 100
    redemption_feed_heartbeat_seconds: float = 15.0

    # Pending usage sweep worker
    pending_sweep_worker_enabled: bool = False
    pending_sweep_interval_seconds: int = 60
    pending_sweep_grace_seconds: int = 30
    pending_sweep_batch_size: int = 200


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
