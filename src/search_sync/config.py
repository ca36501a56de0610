"""Application configuration and settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application
    app_name: str = "Search Sync Pipeline"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # Logging
    log_level: str = "INFO"

    # Supabase (system of record + change queue)
    supabase_url: str | None = None
    supabase_key: str | None = None  # Service role key (not anon key!)
    change_queue_table: str = "elasticsearch_sync_queue"
    listings_table: str = "listings"
    category_suggestions_table: str = "category_ai_suggestions"

    # Qdrant Configuration (search index)
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    qdrant_prefer_grpc: bool = False
    qdrant_local_mode: bool = False
    qdrant_timeout: int = 30  # Timeout in seconds

    # Index names per entity kind
    listings_index: str = "listings"
    profiles_index: str = "user_profiles"
    categories_index: str = "categories"
    category_suggestions_index: str = "ai_suggestions"
    inventory_index: str = "inventory_items"

    # Worker Configuration
    worker_poll_interval: float = 5.0  # Seconds between queue polls
    worker_batch_size: int = 5
    worker_parallelism: int | None = None  # Defaults to batch size
    worker_processing_timeout: float = 30.0  # Hard timeout per record
    worker_max_retries: int = 3
    worker_stuck_timeout: float = 30.0  # Processing longer than this is stuck
    worker_long_stuck_timeout: float = 600.0  # Stuck regardless of timeout config
    worker_stuck_retry_threshold: int = 2
    worker_health_check_interval: float = 15.0
    worker_shutdown_timeout: int = 30  # Graceful shutdown timeout
    health_port: int = 8080

    # Cache service (category counts invalidation)
    cache_service_url: str | None = None
    cache_service_timeout: float = 2.0

    # External queue service (new backend)
    queue_service_url: str = "http://localhost:3012"
    queue_service_timeout: float = 10.0
    queue_service_retries: int = 2  # HTTP-level retries only
    queue_service_retry_backoff: float = 0.5

    # Hybrid routing
    hybrid_new_backend_enabled: bool = False
    hybrid_target_percentage: float = 0.0
    hybrid_fallback_enabled: bool = True
    hybrid_catch_up_bonus: float = 10.0
    hybrid_catch_up_cap: float = 100.0
    hybrid_on_track_tolerance: float = 5.0

    # Sync orchestration
    sync_enabled: bool = True
    sync_interval: float = 300.0  # Incremental sync heartbeat (5 minutes)
    incremental_sync_max_wait: float = 30.0
    incremental_sync_poll_interval: float = 1.0
    resync_page_size: int = 500
    resync_entity_kinds: list[str] = ["listings", "category_ai_suggestions"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
