"""
CaseLink Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Paths (use CASELINK_ prefix)
    data_path: Path = Field(
        default=Path("./data"),
        alias="CASELINK_DATA_PATH",
        description="Directory holding the case records database"
    )

    # Server
    port: int = Field(default=8000, alias="CASELINK_PORT")
    host: str = Field(default="0.0.0.0", alias="CASELINK_HOST")
    log_level: str = Field(default="INFO", alias="CASELINK_LOG_LEVEL")

    # ==========================================================================
    # RESOLUTION ENGINE
    # ==========================================================================
    # Every key/role lookup and every case hydration batch gets its own
    # timeout. A timed-out lookup marks the result partial instead of
    # failing the whole resolution.
    # ==========================================================================

    lookup_timeout_seconds: float = Field(
        default=5.0,
        alias="CASELINK_LOOKUP_TIMEOUT",
        description="Timeout for a single key/role lookup"
    )
    hydrate_timeout_seconds: float = Field(
        default=5.0,
        alias="CASELINK_HYDRATE_TIMEOUT",
        description="Timeout for one batched case summary fetch"
    )
    max_concurrent_resolutions: int = Field(
        default=4,
        alias="CASELINK_MAX_CONCURRENT_RESOLUTIONS",
        description="Upper bound on parallel resolutions for rosters and search"
    )

    # Store retry (StoreUnavailable only)
    store_retry_max: int = Field(default=2, alias="CASELINK_STORE_RETRY_MAX")
    store_retry_base_delay: float = Field(default=0.2, alias="CASELINK_STORE_RETRY_DELAY")
    store_retry_max_delay: float = Field(default=2.0, alias="CASELINK_STORE_RETRY_MAX_DELAY")

    # Thresholds (screens used different ones, so callers may override)
    repeat_offender_threshold: int = Field(
        default=2,
        alias="CASELINK_REPEAT_OFFENDER_THRESHOLD",
        description="Distinct cases needed to flag a repeat offender"
    )
    repeat_surety_threshold: int = Field(
        default=2,
        alias="CASELINK_REPEAT_SURETY_THRESHOLD",
        description="Occurrences needed to flag a repeat surety"
    )

    default_match_policy: str = Field(
        default="contact_or_national_id",
        alias="CASELINK_MATCH_POLICY",
        description="Identity policy used when a caller does not state one"
    )

    # Limits
    search_limit: int = Field(default=100, alias="CASELINK_SEARCH_LIMIT")
    report_limit: int = Field(default=500, alias="CASELINK_REPORT_LIMIT")

    @property
    def db_path(self) -> Path:
        """Path to the SQLite case records database."""
        return self.data_path / "cases.db"


# Global settings instance
settings = Settings()
