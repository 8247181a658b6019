import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_url_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma or whitespace separated values.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    urls: list[str] = []
    seen: set[str] = set()
    for part in re.split(r"[,\s]+", raw):
        if not part or part in seen:
            continue
        seen.add(part)
        urls.append(part)
    return urls


class Settings(BaseSettings):
    """Rate limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Explicit constructor arguments on ``Ratelimit`` take priority over these.
    """

    # Debug mode - enables verbose logging of cache short-circuits
    debug: bool = False

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"
    # One URL per region for multi-region deployments (JSON list or comma separated)
    redis_region_urls: Annotated[list[str], NoDecode] = []

    @field_validator("redis_region_urls", mode="before")
    @classmethod
    def decode_redis_region_urls(cls, v: Any) -> list[str]:
        return _parse_url_list(v)

    # Rate limiting settings
    ratelimit_prefix: str = "edgelimit"
    ratelimit_timeout_ms: int = 5000  # 0 disables the timeout race
    ratelimit_analytics: bool = False
    ratelimit_enable_protection: bool = False

    # Deny list settings
    deny_list_threshold: int = 6
    ip_deny_list_base_url: str = (
        "https://raw.githubusercontent.com/stamparm/ipsum/master/levels"
    )

    # Analytics settings
    analytics_retention_days: int = 90

    # HTTP client settings (IP deny list download)
    httpx_timeout: float = 10.0
    httpx_connect_timeout: float = 5.0
    httpx_read_timeout: float = 10.0
    httpx_write_timeout: float = 5.0
    httpx_pool_timeout: float = 5.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("deny_list_threshold")
    @classmethod
    def validate_deny_list_threshold(cls, v: int) -> int:
        """Validate the IP reputation threshold is within 1..8."""
        if v < 1 or v > 8:
            raise ValueError("deny_list_threshold must be between 1 and 8")
        return v

    @field_validator("ratelimit_timeout_ms")
    @classmethod
    def validate_timeout_non_negative(cls, v: int) -> int:
        """Validate the timeout is zero (disabled) or positive."""
        if v < 0:
            raise ValueError("ratelimit_timeout_ms must not be negative")
        return v

    @field_validator("analytics_retention_days")
    @classmethod
    def validate_retention_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("analytics_retention_days must be at least 1")
        return v

    @field_validator(
        "httpx_timeout",
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v.lower()

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
