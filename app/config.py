"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_RETRY_DELAYS_MS: tuple[int, ...] = (350, 900, 1800)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Serializd-Plex", alias="APP_NAME")
    app_version: str = Field(default="1.0.2", alias="APP_VERSION")
    server_host: str = Field(default="127.0.0.1", alias="HOST")
    server_port: int = Field(default=8765, alias="PORT")

    show_cache_ttl_seconds: int = Field(
        default=604_800, alias="SHOW_CACHE_TTL", ge=1
    )
    server_cache_ttl_seconds: int = Field(
        default=600, alias="SERVER_CACHE_TTL", ge=1
    )
    server_cache_max_entries: int = Field(
        default=50, alias="SERVER_CACHE_MAX_ENTRIES", ge=1, le=10_000
    )

    retry_delays_ms: Annotated[tuple[int, ...], NoDecode] = Field(
        default=DEFAULT_RETRY_DELAYS_MS, alias="RETRY_DELAYS_MS"
    )
    mutation_debounce_ms: int = Field(
        default=500, alias="MUTATION_DEBOUNCE_MS", ge=0, le=60_000
    )
    session_idle_ttl_seconds: int = Field(
        default=1800, alias="SESSION_IDLE_TTL", ge=1
    )

    plex_tv_api_url: HttpUrl = Field(
        default="https://plex.tv/api/servers", alias="PLEX_TV_API_URL"
    )
    serializd_url: HttpUrl = Field(
        default="https://www.serializd.com", alias="SERIALIZD_URL"
    )
    default_plex_port: int = Field(
        default=32400, alias="DEFAULT_PLEX_PORT", ge=1, le=65_535
    )
    badge_icon_url: str = Field(
        default="icons/plex-icon-16.png", alias="BADGE_ICON_URL"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./serializd_plex.db", alias="DATABASE_URL"
    )

    debug_navigation: bool = Field(default=False, alias="DEBUG_NAVIGATION")
    test_hooks: bool = Field(default=False, alias="TEST_HOOKS")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("retry_delays_ms", mode="before")
    @classmethod
    def _parse_retry_delays(cls, value: object) -> tuple[int, ...]:
        """Normalise retry delay schedules from environment values."""

        if value is None:
            return DEFAULT_RETRY_DELAYS_MS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("RETRY_DELAYS_MS must be a string or iterable of integers")

        delays: list[int] = []
        for entry in raw_values:
            if not entry:
                continue
            try:
                delay = int(entry)
            except ValueError as exc:
                raise ValueError("RETRY_DELAYS_MS entries must be integers") from exc
            if delay <= 0:
                raise ValueError("RETRY_DELAYS_MS entries must be positive")
            delays.append(delay)
        if not delays:
            return DEFAULT_RETRY_DELAYS_MS
        return tuple(delays)

    @property
    def retry_delays_seconds(self) -> tuple[float, ...]:
        """Return the retry schedule in seconds for event-loop timers."""

        return tuple(delay / 1000 for delay in self.retry_delays_ms)

    @property
    def mutation_debounce_seconds(self) -> float:
        return self.mutation_debounce_ms / 1000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
