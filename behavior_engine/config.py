"""
Application configuration management.
Uses pydantic-settings for environment variable parsing with validation.

All sensitive configuration should be stored in .env file (never commit to git).
See .env.example for required variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Required environment variables:
    - JWT_SECRET_KEY: Secret key used to validate admin bearer tokens

    Optional (have defaults):
    - DATABASE_URL: Database connection string
    - SESSION_*: Session lifetime and in-memory retention
    - BATCH_*: Event batching, retry and post-flush processing
    - SEGMENT_*: Behavior thresholds used by the segment classifier
    - API_TITLE, API_VERSION, LOG_LEVEL: API metadata
    """

    database_url: str = Field(
        default="sqlite:///./behavior_engine.db",
        description="Database connection URL"
    )

    api_title: str = Field(default="Behavior Engine API")
    api_version: str = Field(default="1.0.0")
    api_description: str = Field(
        default="Behavioral segmentation, experiment assignment and event ingestion"
    )

    jwt_secret_key: str = Field(
        ...,
        description="Secret key for JWT validation. Generate with: openssl rand -hex 32"
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="Algorithm for JWT decoding"
    )
    jwt_expiration_minutes: int = Field(
        default=60,
        gt=0,
        description="Lifetime of tokens minted by create_access_token"
    )

    log_level: str = Field(default="INFO")

    session_ttl_seconds: int = Field(
        default=24 * 60 * 60,
        gt=0,
        description="Rolling inactivity window after which a session is replaced"
    )
    session_max_retained_events: int = Field(
        default=200,
        gt=0,
        description="Most-recent behavior events kept in memory per session"
    )

    batch_size: int = Field(default=100, gt=0)
    batch_flush_interval_seconds: float = Field(default=5.0, gt=0)
    batch_sweep_interval_seconds: float = Field(default=1.0, gt=0)
    batch_max_retries: int = Field(default=5, ge=0)
    batch_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    batch_processing_delay_seconds: float = Field(default=1.0, ge=0)
    batch_workers: int = Field(default=4, gt=0)
    batch_dead_letter_limit: int = Field(
        default=1000,
        gt=0,
        description="Most recent dead-lettered batches and session writes kept for inspection"
    )
    batch_background_flush: bool = Field(
        default=True,
        description="Run the sweeper thread and worker pool; when off, flushes run inline"
    )

    segment_buyer_min_clicks: int = Field(default=5, ge=0)
    segment_engaged_min_page_views: int = Field(default=10, ge=0)
    segment_engaged_min_time_ms: int = Field(default=600_000, ge=0)
    segment_researcher_min_quizzes: int = Field(default=2, ge=0)
    segment_researcher_max_clicks: int = Field(default=3, ge=0)
    segment_returning_min_page_views: int = Field(default=1, ge=0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False



settings = Settings()
