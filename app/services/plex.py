"""Resolution of Plex metadata keys into TMDB show/season/episode identities."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Callable

from ..config import Settings
from ..models import ResolvedIdentity, ServerCacheEntry, ServerContext
from ..utils import (
    build_plex_api_url,
    build_plex_api_url_from_base,
    redact_sensitive,
    safe_error_message,
)
from .cache import ServerCache
from .exceptions import ProxyError
from .proxy import FetchProxy
from .runs import RunToken

logger = logging.getLogger(__name__)

TMDB_GUID_RE = re.compile(r"tmdb://(\d+)", re.IGNORECASE)
CONTENT_TYPES = frozenset({"movie", "show", "season", "episode"})
ITEM_TAGS = frozenset({"Directory", "Video", "Metadata"})
MAX_RELATED_KEYS = 2


def parse_tmdb_id(value: str | None) -> int | None:
    if not value:
        return None
    match = TMDB_GUID_RE.search(value)
    return int(match.group(1)) if match else None


@dataclass(slots=True)
class PlexItem:
    """Typed view over the first metadata record of a Plex response."""

    type: str | None
    attributes: dict[str, str]
    guid_ids: list[str] = field(default_factory=list)
    document_guid_ids: list[str] = field(default_factory=list)

    def int_attr(self, name: str) -> int | None:
        value = (self.attributes.get(name) or "").strip()
        return int(value) if value.isdigit() else None

    def tmdb_attr(self, name: str) -> int | None:
        return parse_tmdb_id(self.attributes.get(name))

    @property
    def own_tmdb_id(self) -> int | None:
        """TMDB id from the item's own ``Guid`` children, else its ``guid``."""

        for guid in self.guid_ids:
            tmdb_id = parse_tmdb_id(guid)
            if tmdb_id is not None:
                return tmdb_id
        return self.tmdb_attr("guid")

    @property
    def any_tmdb_id(self) -> int | None:
        for guid in self.document_guid_ids:
            tmdb_id = parse_tmdb_id(guid)
            if tmdb_id is not None:
                return tmdb_id
        return None

    @property
    def related_keys(self) -> list[str]:
        """Grandparent then parent metadata keys, for fallback traversal."""

        keys: list[str] = []
        for name in ("grandparentRatingKey", "parentRatingKey"):
            rating_key = self.int_attr(name)
            if rating_key is None:
                continue
            key = f"/library/metadata/{rating_key}"
            if key not in keys:
                keys.append(key)
        return keys[:MAX_RELATED_KEYS]


def parse_metadata(xml_text: str) -> PlexItem | None:
    """Parse a Plex metadata response; ``None`` if it is not usable XML."""

    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        logger.debug("Discarding malformed Plex metadata response")
        return None

    node = root
    if root.get("type") not in CONTENT_TYPES:
        for child in root:
            if child.tag in ITEM_TAGS or child.get("type") in CONTENT_TYPES:
                node = child
                break

    content_type = node.get("type")
    return PlexItem(
        type=content_type if content_type in CONTENT_TYPES else None,
        attributes=dict(node.attrib),
        guid_ids=[guid.get("id", "") for guid in node.findall("Guid")],
        document_guid_ids=[guid.get("id", "") for guid in root.iter("Guid")],
    )


def _show_identity(item: PlexItem) -> ResolvedIdentity:
    return ResolvedIdentity(show_id=item.own_tmdb_id)


def _season_identity(item: PlexItem) -> ResolvedIdentity:
    return ResolvedIdentity(
        show_id=item.tmdb_attr("parentGuid"),
        season_id=item.own_tmdb_id,
        season_number=item.int_attr("index"),
    )


def _episode_identity(item: PlexItem) -> ResolvedIdentity:
    return ResolvedIdentity(
        show_id=item.tmdb_attr("grandparentGuid"),
        season_id=item.tmdb_attr("parentGuid"),
        season_number=item.int_attr("parentIndex"),
        episode_number=item.int_attr("index"),
    )


IDENTITY_RULES: dict[str, Callable[[PlexItem], ResolvedIdentity]] = {
    "show": _show_identity,
    "season": _season_identity,
    "episode": _episode_identity,
}


def extract_identity(item: PlexItem | None) -> ResolvedIdentity | None:
    """Apply the per-type rules; movies and empty results yield ``None``."""

    if item is None or item.type == "movie":
        return None

    rule = IDENTITY_RULES.get(item.type or "")
    identity = rule(item) if rule else ResolvedIdentity()

    # A season/episode's own GUID is season/episode level, never the show's.
    if identity.show_id is None and item.type in (None, "show"):
        identity.show_id = item.own_tmdb_id or item.any_tmdb_id

    return None if identity.is_empty() else identity


def merge_fallback(
    primary: ResolvedIdentity | None, fallback: ResolvedIdentity
) -> ResolvedIdentity:
    """Show id from the fallback; season/episode fields prefer the primary."""

    primary = primary or ResolvedIdentity()
    return ResolvedIdentity(
        show_id=fallback.show_id,
        season_id=primary.season_id if primary.season_id is not None else fallback.season_id,
        season_number=(
            primary.season_number
            if primary.season_number is not None
            else fallback.season_number
        ),
        episode_number=(
            primary.episode_number
            if primary.episode_number is not None
            else fallback.episode_number
        ),
    )


def parse_server_connection(xml_text: str, *, default_port: int) -> ServerCacheEntry | None:
    """Read connection details from a plex.tv server directory response."""

    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return None

    node = next(root.iter("Connection"), None)
    if node is None:
        node = next(root.iter("Server"), None)
    if node is None:
        return None

    local_addresses = node.get("localAddresses")
    address = node.get("address") or local_addresses
    port = node.get("port")
    if not port or port == "0":
        port = str(default_port)
    scheme = node.get("scheme") or node.get("protocol") or "http"

    entry = ServerCacheEntry(
        address=address,
        port=port,
        scheme=scheme,
        local_addresses=local_addresses,
        server_name=node.get("name") or node.get("serverName"),
    )
    return entry if entry.is_usable() else None


class IdentityResolver:
    """Turns a Plex metadata key into TMDB identifiers via the fetch proxy."""

    def __init__(
        self, settings: Settings, proxy: FetchProxy, server_cache: ServerCache
    ) -> None:
        self._settings = settings
        self._proxy = proxy
        self._server_cache = server_cache
        self._directory_prefix = str(settings.plex_tv_api_url).rstrip("/").lower() + "/"

    def is_directory_url(self, url: str) -> bool:
        return url.lower().startswith(self._directory_prefix)

    async def resolve(
        self,
        plex_key: str,
        server: ServerContext | None,
        run: RunToken | None = None,
    ) -> ResolvedIdentity | None:
        """Return the identity for ``plex_key``, or ``None`` when unavailable.

        Every failure (no server context, unreachable server, unusable XML) is
        reported as ``None`` so the caller can retry. ``StaleRunError`` from a
        checkpoint propagates.
        """

        if server is None:
            logger.debug("No Plex server context for %s", plex_key)
            return None

        api_url = await self._metadata_url(plex_key, server, run)
        if not api_url:
            logger.debug("Could not build a metadata URL for %s", plex_key)
            return None

        primary_item = await self._fetch_item(api_url, server.token)
        if primary_item is None or primary_item.type == "movie":
            return None
        primary = extract_identity(primary_item)
        if primary is not None and primary.show_id is not None:
            return primary

        related_keys = primary_item.related_keys
        if not related_keys:
            logger.debug("No related keys to fall back on for %s", plex_key)
            return primary

        logger.debug("Falling back to related keys %s for %s", related_keys, plex_key)
        for related_key in related_keys:
            if run is not None:
                run.checkpoint("before-related-fetch")
            related_url = build_plex_api_url_from_base(api_url, related_key)
            if not related_url:
                continue
            related = extract_identity(await self._fetch_item(related_url, server.token))
            if related is not None and related.show_id is not None:
                return merge_fallback(primary, related)

        logger.debug("Related metadata fallback exhausted for %s", plex_key)
        return primary

    async def _metadata_url(
        self, plex_key: str, server: ServerContext, run: RunToken | None
    ) -> str | None:
        if not (server.server_id and self.is_directory_url(server.url)):
            return build_plex_api_url_from_base(server.url, plex_key)

        entry = await self._server_cache.get_server(server.server_id)
        if entry is None:
            entry = await self._discover_server(server)
            if entry is None:
                return None
            if run is not None:
                run.checkpoint("after-server-discovery")
            await self._server_cache.set_server(server.server_id, entry)
        return build_plex_api_url(entry.scheme, entry.address, entry.port, plex_key)

    async def _discover_server(self, server: ServerContext) -> ServerCacheEntry | None:
        try:
            response = await self._proxy.fetch_page_metadata(server.url, server.token)
        except ProxyError as exc:
            logger.warning(
                "Server discovery failed for %s: %s",
                server.server_id,
                safe_error_message(exc),
            )
            return None
        return parse_server_connection(
            response.text, default_port=self._settings.default_plex_port
        )

    async def _fetch_item(self, url: str, token: str) -> PlexItem | None:
        try:
            response = await self._proxy.fetch_page_metadata(url, token)
        except ProxyError as exc:
            logger.warning(
                "Plex metadata fetch failed for %s: %s",
                redact_sensitive(url),
                safe_error_message(exc),
            )
            return None
        if not response.success:
            logger.debug("Unsuccessful Plex metadata response (%s)", response.status)
            return None
        return parse_metadata(response.text)
