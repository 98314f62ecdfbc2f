"""Settings loaded from ENGAGEMENT_* environment variables (or a .env file)."""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ENGAGEMENT_",
        env_file=".env",
        extra="ignore",
    )

    # Payment proof intake
    max_proof_bytes: int = Field(default=5 * 1024 * 1024, description="Largest accepted proof artifact")
    allowed_proof_types: list[str] = Field(
        default=["image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"],
        description="MIME types accepted as payment proof",
    )

    # Upload collaborator
    upload_url: str = Field(default="http://localhost:3000/api/upload", description="Multipart upload endpoint")
    upload_folder: str = Field(default="payment-proofs", description="Base folder for proof artifacts")
    upload_timeout: float = Field(default=15.0, description="Upload request timeout (seconds)")
    currency_symbol: str = Field(default="₱", description="Symbol used in system messages")

    # Reconciliation
    current_window_days: int = Field(default=30, description="Length of the current revenue window")
    prior_window_days: int = Field(default=30, description="Length of the prior revenue window")
    top_services: int = Field(default=5, description="Entries kept in the per-service breakdown")
    cross_source_dedup: bool = Field(default=False, description="Match messages/notifications to transactions")
    dedup_proximity_minutes: int = Field(default=60, description="Max time gap for a cross-source match")

    # Application
    app_name: str = Field(default="service-engagement")
    log_level: str = Field(default="INFO")
    allowed_origins: str = Field(default="*", description="CORS allowed origins (comma-separated)")

    @property
    def allowed_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
