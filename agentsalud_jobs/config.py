from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Celery worker configuration."""

    database_url: str = (
        "postgresql+psycopg2://agentsalud:agentsalud@db:5432/agentsalud"  # pragma: allowlist secret
    )
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "America/Bogota"

    evolution_api_base_url: str = "http://localhost:8080"
    evolution_instance_name: str = ""
    evolution_api_key: str = ""
    whatsapp_mock_mode: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
