"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Health tracker engine configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default; there is no auth layer in front of the tools.
    ht_host: str = "127.0.0.1"
    ht_port: int = 8001
    ht_log_level: str = "info"
    ht_allow_insecure_bind: bool = False

    # Storage
    db_path: str = "~/.healthtrack/tracker.db"

    # Encryption (free-text notes at rest)
    encryption_key: str = ""

    # Reference data. Empty means the packaged biomarker_ranges.yaml.
    biomarker_ranges_path: str = ""

    # Aggregation
    weight_anomaly_threshold_percent: float = 2.0

    # Goals
    unique_active_goal_types: list[str] = ["weight"]
    milestone_percentages: list[int] = [25, 50, 75, 100]


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
