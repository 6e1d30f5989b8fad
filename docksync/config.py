"""Process configuration pulled from environment variables via pydantic."""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.logging_utils import get_tagged_logger
logger = get_tagged_logger(__name__, tag="config")


class Settings(BaseSettings):
    """Environment-driven configuration shared by phone, watch and widget processes."""
    model_config = SettingsConfigDict(env_prefix="DOCKSYNC_", extra="ignore")

    process_role: str = "phone"  # options: phone, watch, widget
    log_level: str = "INFO"
    api_key: str | None = None
    api_key_redis_url: str | None = None
    api_key_redis_set: str = "api_keys"

    # remote station API
    api_base_url: str = "https://api.tfl.gov.uk"
    stations_path: str = "/BikePoint"
    request_timeout_seconds: float = 30.0
    min_request_interval_seconds: float = 2.0
    max_retries: int = 2
    fetch_workers: int = 4

    # freshness windows
    cache_ttl_seconds: float = 60.0
    last_known_good_max_age_seconds: float = 600.0
    refresh_request_max_age_seconds: float = 60.0

    # shared store
    store_backend: str = "memory"  # options: memory, redis, sql
    store_redis_url: str | None = None
    store_database_url: str = "sqlite:///./docksync.db"
    store_key_prefix: str = "docksync:"

    # companion channel
    companion_sync_interval_seconds: float = 30.0
    companion_connectivity_interval_seconds: float = 10.0
    companion_max_failures: int = 10
    companion_backoff_step_seconds: float = 30.0
    companion_backoff_cap_seconds: float = 300.0

    # consumers
    foreground_refresh_interval_seconds: float = 30.0
    cache_bust_every: int = 4
    mailbox_poll_interval_seconds: float = 10.0
    run_background_loops: bool = True
    error_banner_delay_seconds: float = 20.0
    deep_link_scheme: str = "myborisbikes"

    @field_validator("api_base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs to avoid double slashes."""
        return str(v).rstrip("/")

    @field_validator("stations_path", mode="after")
    @classmethod
    def ensure_leading_slash(cls, v: str) -> str:
        """Collection path is always joined onto the base URL."""
        v = str(v).rstrip("/")
        return v if v.startswith("/") else f"/{v}"

    @property
    def stations_url(self) -> str:
        return f"{self.api_base_url}{self.stations_path}"


settings = Settings()


if __name__ == "__main__":
    logger.setLevel("DEBUG")
    logger.debug(f"Loaded settings: {settings.model_dump_json(indent=4)}")
