from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UPSTREAM_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_CREDENTIAL_POOL_KEY = "gemini-proxy"


class Settings(BaseSettings):
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0
    redis_connect_timeout_seconds: float = 5.0
    credential_pool_key: str = DEFAULT_CREDENTIAL_POOL_KEY
    api_key: str = ""
    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    upstream_timeout_seconds: float = 30.0
    credential_routes_enabled: bool = False
    server_host: str = "0.0.0.0"
    server_port: int = 8080

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("redis_host", "redis_port", "redis_db", mode="before")
    @classmethod
    def _blank_or_invalid_uses_default(cls, value: Any, info: Any) -> Any:
        # Redis coordinates never abort startup: bad values mean "use the default".
        default = cls.model_fields[info.field_name].default
        if value is None:
            return default
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return default
            if isinstance(default, int):
                try:
                    return int(value)
                except ValueError:
                    return default
        return value

    @property
    def redis_address(self) -> str:
        return f"{self.redis_host}:{self.redis_port}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
