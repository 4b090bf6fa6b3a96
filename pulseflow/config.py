"""Configuration settings for the pulseflow engine."""

from pathlib import Path

from pydantic_settings import BaseSettings

# Repository root (where alembic.ini and alembic/ live)
_PACKAGE_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///pulseflow.db"
    db_echo: bool = False

    # Migrations
    alembic_dir: Path = _PACKAGE_DIR / "alembic"

    # Logging
    log_level: str = "INFO"

    # Cost ledger: total input tokens above which long-context rates apply
    long_context_threshold: int = 200_000

    class Config:
        env_prefix = "PULSEFLOW_"
        env_file = ".env"


# Global settings instance
settings = Settings()
