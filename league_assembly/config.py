"""League Assembly — Application configuration via environment variables."""

from __future__ import annotations

from fractions import Fraction

from pydantic_settings import BaseSettings


class AssemblySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (durable store) ─────────────────────────────
    postgres_user: str = "league_assembly"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "league_assembly"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Overrides the PostgreSQL fields when set (e.g. "sqlite:///./assembly.db")
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    identity_header: str = "X-Country-Id"

    # ── Amendments ─────────────────────────────────────────────
    amendment_voting_hours: int = 24
    amendment_threshold_numerator: int = 2
    amendment_threshold_denominator: int = 3
    amendment_quorum: int = 0
    default_treaty_slug: str = "league-treaty-1900"
    expiry_sweep_interval_seconds: float = 60.0

    @property
    def amendment_threshold(self) -> Fraction:
        return Fraction(
            self.amendment_threshold_numerator, self.amendment_threshold_denominator
        )

    # ── Motions ────────────────────────────────────────────────
    motion_quorum_minimum: int = 3
    motion_quorum_fraction: float = 0.5
    chair_slug: str = "chair"

    # ── Live session ───────────────────────────────────────────
    presence_default_room: str = "presence"
    presence_heartbeat_interval_seconds: float = 5.0
    presence_heartbeat_timeout_seconds: float = 15.0
    presence_quorum_minimum: int = 3

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = AssemblySettings()
