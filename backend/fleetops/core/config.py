"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    app_name: str = "Fleet Trip Corrections API"
    log_level: str = "INFO"
    log_format: str = "console"
    default_actor: str = "system"

    # Storage
    trips_db_path: str = "./data/trips.db"
    # Leave empty to keep corrections and audit entries in the trips database.
    audit_db_path: str = ""
    history_limit: int = 300

    # Odometer continuity classification (km between adjacent trips)
    continuity_small_gap_km: int = 10
    continuity_moderate_gap_km: int = 50

    # Allowed drift between stored and expected km/l before a trip is flagged
    mileage_tolerance_kmpl: float = 0.5

    def resolved_audit_db_path(self) -> str:
        path = (self.audit_db_path or "").strip()
        return path or self.trips_db_path

    def normalized_log_format(self) -> str:
        fmt = (self.log_format or "").strip().lower()
        return fmt if fmt in {"console", "json"} else "console"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
