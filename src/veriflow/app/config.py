"""Runtime configuration, read from the environment and an optional ``.env``."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env at the repository root, independent of the working directory
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    database_url: str = "sqlite+aiosqlite:///./veriflow.db"

    # Property geocoding; empty disables it
    google_maps_api_key: str = ""
    geocoding_region: str = ""

    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    cors_origins: str = "http://localhost:3000"
    # Base of the customer link sent to policy holders
    frontend_url: str = "http://localhost:3000"

    gps_tolerance_meters: float = Field(default=100.0, gt=0)
    default_sla_hours: int = Field(default=24, ge=1, le=24 * 30)
    link_token_bytes: int = Field(default=12, ge=8)

    debug: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        """Comma-separated origins; any origin while debugging."""
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def customer_link(self, link_token: str) -> str:
        """Public URL a customer opens to start or resume a verification."""
        return f"{self.frontend_url.rstrip('/')}/verify/{link_token}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
