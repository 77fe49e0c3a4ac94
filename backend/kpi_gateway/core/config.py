from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # ThingsBoard
    thingsboard_base_url: str = Field(default="http://thingsboard:8080")
    thingsboard_username: str = Field(default="tenant@thingsboard.org")
    thingsboard_password: str = Field(default="tenant")
    thingsboard_customer_id: str = Field(default="")
    thingsboard_http_timeout_seconds: float = Field(default=30.0)

    # Fan-out
    subquery_timeout_seconds: float = Field(default=10.0)

    # Redis (device list cache)
    redis_url: str = Field(default="redis://redis:6379/0")
    device_cache_ttl_seconds: int = Field(default=300)

    # App
    app_env: str = Field(default="development")
    app_url: str = Field(default="http://localhost")
    log_level: str = Field(default="INFO")


# Singleton instance
settings = Settings()
