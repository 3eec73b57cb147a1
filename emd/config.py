"""EMD — Central Configuration via Pydantic Settings."""

import os
from typing import Dict, List, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── FileMaker (job source) ──
    filemaker_host: str = ""
    filemaker_database: str = ""
    filemaker_layout: str = "jobs_api"
    filemaker_user: str = ""
    filemaker_password: str = ""
    filemaker_batch_size: int = 200
    allowed_job_types: List[str] = [
        "Delivery",
        "Pickup",
        "Move",
        "Recover",
        "Drop",
        "Shuttle",
    ]

    # ── Samsara (GPS verification) ──
    samsara_api_url: str = "https://api.samsara.com"
    samsara_api_token: Optional[str] = None
    samsara_truck_mapping: Dict[str, str] = {}  # FileMaker truck id → Samsara vehicle id
    gps_distance_threshold_miles: float = 5.0
    gps_proximity_threshold_miles: float = 2.0

    # ── Polling ──
    polling_interval_seconds: int = 30
    fetch_timeout_seconds: float = 20.0
    verification_timeout_seconds: float = 10.0
    comparison_window_days: int = 1  # 1 = today only
    source_timezone: str = "America/Chicago"

    # ── Snapshot cache ──
    cache_max_size: int = 1000
    cache_ttl_seconds: int = 900

    # ── Alerts ──
    dedup_window_seconds: int = 300
    alert_history_limit: int = 1000
    long_in_progress_hours: float = 4.0

    # ── Database / persistence ──
    database_url: str = ""
    persistence_enabled: bool = True
    persistence_backoff_seconds: float = 5.0
    persistence_backoff_max_seconds: float = 300.0
    job_history_retention_days: int = 30  # 0 keeps history forever

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True

    @model_validator(mode="after")
    def _check_cache_ttl(self) -> "Settings":
        # An entry that expires between two polls would reappear as "added" every cycle.
        if self.cache_ttl_seconds <= self.polling_interval_seconds:
            raise ValueError(
                "cache_ttl_seconds must be greater than polling_interval_seconds"
            )
        if self.comparison_window_days < 1:
            raise ValueError("comparison_window_days must be at least 1")
        return self

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/emd.db"
        return "sqlite:///./emd.db"

    @property
    def filemaker_configured(self) -> bool:
        return bool(self.filemaker_host and self.filemaker_database)

    @property
    def samsara_configured(self) -> bool:
        return bool(self.samsara_api_token)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "EMD_",
    }


settings = Settings()
