from functools import lru_cache
from uuid import UUID

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "AgentSalud API"
    app_version: str = "0.1.0"
    database_url: str = (
        "postgresql+psycopg2://agentsalud:agentsalud@db:5432/agentsalud"  # pragma: allowlist secret
    )
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "America/Bogota"
    cors_origins: list[str] = ["http://localhost:3000"]
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60

    jwt_secret: str = "change-me-dev-secret"  # pragma: allowlist secret
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    bcrypt_rounds: int = 12

    evolution_api_base_url: str = "http://localhost:8080"
    evolution_instance_name: str = ""
    evolution_api_key: str = ""
    webhook_verify_token: str = ""
    whatsapp_mock_mode: bool = False
    whatsapp_notifications_enabled: bool = True
    whatsapp_default_organization_id: UUID | None = None

    reminders_enabled: bool = True
    booking_settings_cache_ttl_seconds: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
