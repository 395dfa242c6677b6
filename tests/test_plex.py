"""Tests for Plex metadata parsing and identity resolution."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.database import Database
from app.models import ServerContext
from app.services.cache import ServerCache
from app.services.plex import (
    IdentityResolver,
    extract_identity,
    parse_metadata,
    parse_server_connection,
)
from app.services.proxy import FetchProxy
from app.services.runs import RunController, StaleRunError

TOKEN = "plex-token-1234567890"

EPISODE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<MediaContainer size="1">
  <Video type="episode" ratingKey="300" index="5" parentIndex="2"
         grandparentGuid="tmdb://100" parentGuid="tmdb://200"
         grandparentRatingKey="55" parentRatingKey="56" title="The Ghost of Harrenhal">
    <Guid id="tmdb://63066"/>
  </Video>
</MediaContainer>"""

EPISODE_WITHOUT_TMDB_XML = """<MediaContainer size="1">
  <Video type="episode" ratingKey="301" index="3" parentIndex="1"
         grandparentGuid="plex://show/5d9c" parentGuid="plex://season/5d9d"
         grandparentRatingKey="55" parentRatingKey="56">
    <Guid id="imdb://tt1234"/>
    <Guid id="tmdb://999999"/>
  </Video>
</MediaContainer>"""

SHOW_XML = """<MediaContainer size="1">
  <Directory type="show" ratingKey="55" guid="plex://show/5d9c" title="Game of Thrones">
    <Guid id="imdb://tt0944947"/>
    <Guid id="tmdb://77"/>
    <Guid id="tvdb://121361"/>
  </Directory>
</MediaContainer>"""

SEASON_XML = """<MediaContainer size="1">
  <Directory type="season" ratingKey="56" index="3" parentGuid="tmdb://1399">
    <Guid id="tmdb://3624"/>
  </Directory>
</MediaContainer>"""

SEASON_WITHOUT_SHOW_XML = """<MediaContainer size="1">
  <Directory type="season" ratingKey="56" index="3" parentGuid="plex://show/x"
             parentRatingKey="55">
    <Guid id="tmdb://3624"/>
  </Directory>
</MediaContainer>"""

MOVIE_XML = """<MediaContainer size="1">
  <Video type="movie" ratingKey="9" guid="plex://movie/1"><Guid id="tmdb://603"/></Video>
</MediaContainer>"""

SERVER_XML = """<MediaContainer size="1">
  <Server name="Living Room" address="203.0.113.5" port="0" scheme="https"
          localAddresses="192.168.1.10" machineIdentifier="abc123"/>
</MediaContainer>"""


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    return Settings(_env_file=None, **overrides)  # type: ignore[arg-type]


def test_episode_identity_reads_parent_and_grandparent_guids() -> None:
    identity = extract_identity(parse_metadata(EPISODE_XML))

    assert identity is not None
    assert identity.show_id == 100
    assert identity.season_id == 200
    assert identity.season_number == 2
    assert identity.episode_number == 5


def test_episode_own_guid_never_becomes_show_id() -> None:
    identity = extract_identity(parse_metadata(EPISODE_WITHOUT_TMDB_XML))

    assert identity is not None
    assert identity.show_id is None
    assert identity.season_number == 1
    assert identity.episode_number == 3


def test_show_identity_uses_tmdb_guid_child() -> None:
    identity = extract_identity(parse_metadata(SHOW_XML))

    assert identity is not None
    assert identity.show_id == 77
    assert not identity.has_season_episode_context


def test_season_identity() -> None:
    identity = extract_identity(parse_metadata(SEASON_XML))

    assert identity is not None
    assert (identity.show_id, identity.season_id, identity.season_number) == (1399, 3624, 3)


def test_movies_and_malformed_documents_yield_nothing() -> None:
    assert extract_identity(parse_metadata(MOVIE_XML)) is None
    assert parse_metadata("<MediaContainer><Video") is None
    assert extract_identity(None) is None


def test_related_keys_prefer_grandparent() -> None:
    item = parse_metadata(EPISODE_WITHOUT_TMDB_XML)

    assert item is not None
    assert item.related_keys == ["/library/metadata/55", "/library/metadata/56"]


def test_parse_server_connection_defaults_port() -> None:
    entry = parse_server_connection(SERVER_XML, default_port=32400)

    assert entry is not None
    assert entry.address == "203.0.113.5"
    assert entry.port == "32400"
    assert entry.scheme == "https"
    assert entry.server_name == "Living Room"


def test_parse_server_connection_prefers_connection_node() -> None:
    xml = """<MediaContainer><Server name="s" address="1.1.1.1" port="1">
      <Connection protocol="http" address="10.0.0.5" port="32401"/>
    </Server></MediaContainer>"""

    entry = parse_server_connection(xml, default_port=32400)

    assert entry is not None
    assert (entry.scheme, entry.address, entry.port) == ("http", "10.0.0.5", "32401")
    assert parse_server_connection("<MediaContainer/>", default_port=32400) is None


@pytest.mark.anyio("asyncio")
async def test_resolve_episode_on_direct_server(tmp_path: Path) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=EPISODE_XML)

    settings = build_settings()
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'plex.db'}")
    await database.create_all()
    try:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = IdentityResolver(
                settings,
                FetchProxy(settings, client),
                ServerCache.from_settings(settings, database.session_factory),
            )
            identity = await resolver.resolve(
                "/library/metadata/300",
                ServerContext(url="https://10-0-0-2.abc.plex.direct:32400", token=TOKEN),
            )
    finally:
        await database.dispose()

    assert identity is not None
    assert (identity.show_id, identity.season_id) == (100, 200)
    assert len(requests) == 1
    request = requests[0]
    assert request.headers["X-Plex-Token"] == TOKEN
    assert request.url.path == "/library/metadata/300"
    assert request.url.params["includeGuids"] == "1"
    assert request.url.params["includeExternalMedia"] == "1"


@pytest.mark.anyio("asyncio")
async def test_resolve_falls_back_to_related_item(tmp_path: Path) -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("/55"):
            return httpx.Response(200, text=SHOW_XML)
        return httpx.Response(200, text=EPISODE_WITHOUT_TMDB_XML)

    settings = build_settings()
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'plex.db'}")
    await database.create_all()
    try:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = IdentityResolver(
                settings,
                FetchProxy(settings, client),
                ServerCache.from_settings(settings, database.session_factory),
            )
            identity = await resolver.resolve(
                "/library/metadata/301",
                ServerContext(url="http://192.168.1.10:32400", token=TOKEN),
            )
    finally:
        await database.dispose()

    assert identity is not None
    assert identity.show_id == 77
    assert identity.season_number == 1
    assert identity.episode_number == 3
    assert paths == ["/library/metadata/301", "/library/metadata/55"]


@pytest.mark.anyio("asyncio")
async def test_season_fallback_keeps_season_context(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/55"):
            return httpx.Response(200, text=SHOW_XML)
        return httpx.Response(200, text=SEASON_WITHOUT_SHOW_XML)

    settings = build_settings()
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'plex.db'}")
    await database.create_all()
    try:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = IdentityResolver(
                settings,
                FetchProxy(settings, client),
                ServerCache.from_settings(settings, database.session_factory),
            )
            identity = await resolver.resolve(
                "/library/metadata/56",
                ServerContext(url="http://192.168.1.10:32400", token=TOKEN),
            )
    finally:
        await database.dispose()

    assert identity is not None
    assert (identity.show_id, identity.season_id, identity.season_number) == (77, 3624, 3)


@pytest.mark.anyio("asyncio")
async def test_resolve_returns_none_for_movies_and_errors(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/9"):
            return httpx.Response(200, text=MOVIE_XML)
        return httpx.Response(401, text="Unauthorized")

    settings = build_settings()
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'plex.db'}")
    await database.create_all()
    try:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = IdentityResolver(
                settings,
                FetchProxy(settings, client),
                ServerCache.from_settings(settings, database.session_factory),
            )
            server = ServerContext(url="http://127.0.0.1:32400", token=TOKEN)
            assert await resolver.resolve("/library/metadata/9", server) is None
            assert await resolver.resolve("/library/metadata/10", server) is None
            assert await resolver.resolve("/library/metadata/10", None) is None
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_directory_discovery_is_cached(tmp_path: Path) -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "plex.tv":
            assert request.url.path == "/api/servers/abc123"
            return httpx.Response(200, text=SERVER_XML)
        assert request.url.host == "203.0.113.5"
        assert request.url.port == 32400
        return httpx.Response(200, text=SHOW_XML)

    settings = build_settings()
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'plex.db'}")
    await database.create_all()
    try:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            server_cache = ServerCache.from_settings(settings, database.session_factory)
            resolver = IdentityResolver(settings, FetchProxy(settings, client), server_cache)
            server = ServerContext(
                url="https://plex.tv/api/servers/abc123", token=TOKEN, server_id="abc123"
            )

            first = await resolver.resolve("/library/metadata/55", server)
            second = await resolver.resolve("/library/metadata/55", server)
            cached = await server_cache.get_server("abc123")
    finally:
        await database.dispose()

    assert first is not None and first.show_id == 77
    assert second is not None and second.show_id == 77
    assert hosts == ["plex.tv", "203.0.113.5", "203.0.113.5"]
    assert cached is not None
    assert cached.address == "203.0.113.5"


@pytest.mark.anyio("asyncio")
async def test_stale_run_skips_server_cache_write(tmp_path: Path) -> None:
    location = {"href": "https://app.plex.tv/desktop/#!/server/abc123/details?key=a"}

    def handler(request: httpx.Request) -> httpx.Response:
        # The user navigates away while discovery is in flight.
        location["href"] = "https://app.plex.tv/desktop/#!/server/abc123/details?key=b"
        return httpx.Response(200, text=SERVER_XML)

    settings = build_settings()
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'plex.db'}")
    await database.create_all()
    try:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            server_cache = ServerCache.from_settings(settings, database.session_factory)
            resolver = IdentityResolver(settings, FetchProxy(settings, client), server_cache)
            run = RunController(lambda: location["href"]).begin()

            with pytest.raises(StaleRunError) as excinfo:
                await resolver.resolve(
                    "/library/metadata/55",
                    ServerContext(
                        url="https://plex.tv/api/servers/abc123",
                        token=TOKEN,
                        server_id="abc123",
                    ),
                    run,
                )
            assert await server_cache.keys() == []
    finally:
        await database.dispose()

    assert excinfo.value.stage == "after-server-discovery"
