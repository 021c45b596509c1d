"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Zoom Phone ──────────────────────────────────────────────
    zoom_account_id: str = Field(default="", description="Zoom Server-to-Server OAuth account ID")
    zoom_client_id: str = Field(default="", description="Zoom OAuth client ID")
    zoom_client_secret: str = Field(default="", description="Zoom OAuth client secret")
    zoom_base_url: str = Field(default="https://api.zoom.us/v2")
    zoom_oauth_url: str = Field(default="https://zoom.us/oauth/token")
    zoom_default_user_id: str = Field(default="", description="Zoom user placing calls when none is selected")
    zoom_caller_number: str = Field(default="", description="Outbound caller ID (blank = Zoom default)")

    default_phone_region: str = Field(default="JP", description="Region for numbers without a country code")

    # ── Call session timing ─────────────────────────────────────
    tick_interval_seconds: float = Field(default=1.0, gt=0)
    status_poll_interval_seconds: float = Field(default=2.0, gt=0)
    long_call_warning_seconds: int = Field(default=10800, ge=1)
    poll_failure_warning_threshold: int = Field(default=3, ge=1)

    # ── Coaching channel ────────────────────────────────────────
    coaching_buffer_size: int = Field(default=50, ge=1, le=1000)

    # ── Pivot alerts ────────────────────────────────────────────
    pivot_min_calls: int = Field(default=50, ge=1)
    default_min_appointment_rate: float = Field(default=50.0, ge=0, le=100)
    rejection_min_calls: int = Field(default=30, ge=1)
    max_rejection_ratio: float = Field(default=0.7, gt=0, le=1)

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/callops.db"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    @property
    def zoom_configured(self) -> bool:
        return bool(self.zoom_account_id and self.zoom_client_id and self.zoom_client_secret)

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [self.log_dir, self.database_path.parent]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """Factory – cached at module level after first call."""
    return Settings()  # type: ignore[call-arg]
