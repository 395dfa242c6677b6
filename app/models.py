"""Pydantic models describing page context, identities and cache payloads."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .utils import page_cache_key, page_context_key


class PageContext(BaseModel):
    """What the host page currently shows, derived on every pipeline run."""

    title: str | None = None
    year: str | None = None
    plex_key: str | None = None
    href: str = ""

    @property
    def is_show_page(self) -> bool:
        # Season/episode pages often lack a year but still expose a metadata key.
        return bool(self.title) and bool(self.year or self.plex_key)

    @property
    def normalized_year(self) -> str:
        return self.year or "unknown"

    @property
    def cache_key(self) -> str:
        """Key used by the show cache, independent of season/episode."""

        return page_cache_key(self.title or "", self.normalized_year)

    @property
    def identity_key(self) -> str:
        """Dedup key for the page view; the plex key wins when present."""

        return page_context_key(self.title or "", self.normalized_year, self.plex_key)


class ResolvedIdentity(BaseModel):
    """Show-level TMDB id plus optional season/episode disambiguators."""

    show_id: int | None = None
    season_id: int | None = None
    season_number: int | None = None
    episode_number: int | None = None

    @property
    def has_season_episode_context(self) -> bool:
        return (
            self.season_id is not None
            or self.season_number is not None
            or self.episode_number is not None
        )

    def is_empty(self) -> bool:
        return self.show_id is None and not self.has_season_episode_context


class ShowCacheEntry(BaseModel):
    """Persisted rating lookup for a show, keyed by title and year."""

    show_id: int
    url: str
    rating: float | None = None
    season_map: dict[int, int] = Field(default_factory=dict)
    timestamp: int = 0


class ServerCacheEntry(BaseModel):
    """Connection details discovered for a Plex server."""

    address: str | None = None
    port: str | None = None
    scheme: str | None = None
    local_addresses: str | None = None
    server_name: str | None = None
    timestamp: int = 0

    def is_usable(self) -> bool:
        return bool(self.address and self.port and self.scheme)


class RatingResult(BaseModel):
    """Outcome of a Serializd show page lookup."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    rating: float | None = None
    rating_out_of_10: float | None = Field(
        default=None,
        validation_alias=AliasChoices("rating_out_of_10", "ratingOutOf10"),
        serialization_alias="ratingOutOf10",
    )
    season_map: dict[int, int] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("season_map", "seasonMap"),
        serialization_alias="seasonMap",
    )
    url: str | None = None
    show_id: int | None = Field(
        default=None,
        validation_alias=AliasChoices("show_id", "showId", "tmdbId"),
        serialization_alias="showId",
    )
    error: str | None = None

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(by_alias=True, exclude_none=True)


class MetadataResponse(BaseModel):
    """Raw Plex metadata returned by the fetch proxy."""

    success: bool
    text: str = ""
    status: int | None = None


class InterceptedRequest(BaseModel):
    """Out-of-band notice that the host page issued a metadata request."""

    model_config = ConfigDict(populate_by_name=True)

    url: str | None = None
    server_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("server_url", "serverUrl"),
        serialization_alias="serverUrl",
    )
    server_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("server_id", "serverId"),
        serialization_alias="serverId",
    )
    token: str | None = None


class ServerContext(BaseModel):
    """Where and how to reach the Plex server for metadata lookups."""

    url: str
    token: str
    server_id: str | None = None
