from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_name: str = "migration-dashboard"
    api_host: str = "0.0.0.0"
    api_port: int = 8088

    database_url: str = "sqlite:///./var/dashboard.db"
    redis_url: str = "redis://localhost:6379/0"

    # Remote migration server and the externally reachable dashboard URL used for webhooks
    migration_api_url: str = "http://localhost:8080"
    dashboard_base_url: str = "http://localhost:8088"

    cache_dir: str = "./var/cache"

    monitor_interval: int = 10
    stale_lock_seconds: int = 600

    http_retry_attempts: int = 3
    http_retry_delay: float = 5.0
    http_timeout: float = 10.0
    http_backoff: Literal["fixed", "exponential"] = "fixed"

    default_site_id: int | None = None
    default_secret: str | None = None
    default_batch_size: int = 3

settings = Settings()
