from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./tasks.db"
    database_echo: bool = False

    redis_dsn: str = "redis://localhost:6379/0"  # empty string disables L2
    redis_pool_size: int = 5
    l1_maxsize: int = 2048
    cache_ttl_seconds: int = 60
    cache_namespace: str = "taskcache:"

    purge_delay_seconds: float = 600  # 10 minutes after completion
    purge_poll_interval_seconds: float = 5.0
    purge_retry_delay_seconds: float = 60.0
    purge_max_attempts: int = 5
    purge_batch_limit: int = 32

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
