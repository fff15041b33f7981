from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class Settings(BaseSettings):
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # Lock acquisition timeout for storage operations
    storage_timeout_seconds: float = Field(default=5.0, gt=0)
    # Run claim side effects in the same transaction as the claim record
    atomic_side_effects: bool = True
    leaderboard_sync_enabled: bool = True
    points_summary_window_days: int = Field(default=30, ge=1)

    # Base of the public scan links handed out with QR analytics
    frontend_url: str = "https://eco-rewards-sooty.vercel.app"

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    seed_demo_data: bool = True

    model_config = SettingsConfigDict(
        env_prefix="CLAIMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
