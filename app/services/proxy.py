"""Privileged fetch proxy performing cross-origin requests for the page."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import parse_qs, urlparse

import httpx

from ..config import Settings
from ..models import InterceptedRequest, MetadataResponse, RatingResult
from ..utils import safe_error_message
from .exceptions import ProxyError
from .serializd import parse_show_page

logger = logging.getLogger(__name__)

METADATA_ACTIONS = frozenset({"fetchPageMetadata", "fetchPlexMetadata"})
RATING_ACTIONS = frozenset({"fetchExternalRating", "fetchSerializdRating"})


class FetchProxy:
    """Fetches Plex metadata and Serializd pages; owns no caching or retries."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def fetch_page_metadata(self, url: str, token: str) -> MetadataResponse:
        """Return the raw Plex XML at ``url`` fetched with ``token``."""

        try:
            response = await self._client.get(
                url,
                headers={"X-Plex-Token": token, "Accept": "application/xml"},
            )
        except httpx.HTTPError as exc:
            logger.error("Error fetching from Plex API: %s", safe_error_message(exc))
            raise ProxyError(safe_error_message(exc)) from exc

        if response.status_code >= 400:
            logger.error("Plex API error %s for %s", response.status_code, safe_error_message(url))
            raise ProxyError(f"Plex API error: {response.status_code}")

        return MetadataResponse(success=True, text=response.text, status=response.status_code)

    async def fetch_external_rating(self, show_id: int) -> RatingResult:
        """Fetch the Serializd show page for ``show_id`` and parse its rating."""

        url = f"{str(self._settings.serializd_url).rstrip('/')}/show/{show_id}"
        try:
            response = await self._client.get(
                url,
                headers={
                    "Accept": "text/html",
                    "Accept-Language": "en-US,en;q=0.9",
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Error fetching Serializd rating: %s", safe_error_message(exc))
            raise ProxyError(safe_error_message(exc)) from exc

        if response.status_code == 404:
            return RatingResult(
                success=False, error="Show not found on Serializd", url=url, show_id=show_id
            )
        if response.status_code >= 400:
            raise ProxyError(f"Serializd HTTP error: {response.status_code}")

        return parse_show_page(response.text, show_id=show_id, url=url)

    async def handle_message(self, message: Mapping[str, Any]) -> dict[str, Any]:
        """Answer a page-side request message with the wire-format payload."""

        action = message.get("action")
        try:
            if action in METADATA_ACTIONS:
                url = message.get("url")
                token = message.get("token")
                if not isinstance(url, str) or not url:
                    return {"error": "Missing metadata url"}
                result = await self.fetch_page_metadata(url, str(token or ""))
                return result.model_dump()
            if action in RATING_ACTIONS:
                raw_id = message.get("showId", message.get("tmdbId"))
                try:
                    show_id = int(raw_id)  # type: ignore[arg-type]
                except (TypeError, ValueError):
                    return {"error": "Missing show id"}
                rating = await self.fetch_external_rating(show_id)
                return rating.to_payload()
        except ProxyError as exc:
            return {"error": str(exc)}
        return {"error": f"Unsupported action: {action}"}


def intercept_request(
    url: str, headers: Mapping[str, str] | None = None
) -> InterceptedRequest | None:
    """Describe a completed Plex metadata request as an intercepted-request signal."""

    if "/library/metadata/" not in url:
        return None
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as exc:
        logger.error("Error parsing intercepted URL: %s", safe_error_message(exc))
        return None
    if not parsed.scheme or not parsed.hostname:
        return None

    server_url = f"{parsed.scheme}://{parsed.hostname}"
    if port:
        server_url = f"{server_url}:{port}"

    token = (parse_qs(parsed.query).get("X-Plex-Token") or [None])[0]
    if not token and headers:
        token = next(
            (value for name, value in headers.items() if name.lower() == "x-plex-token"),
            None,
        )

    server_id: str | None = None
    path_parts = parsed.path.split("/")
    if "server" in path_parts:
        index = path_parts.index("server")
        if index + 1 < len(path_parts) and path_parts[index + 1]:
            server_id = path_parts[index + 1]
    elif parsed.hostname.endswith(".plex.direct"):
        server_id = parsed.hostname.split(".")[0]

    return InterceptedRequest(
        url=url, server_url=server_url, server_id=server_id, token=token
    )
