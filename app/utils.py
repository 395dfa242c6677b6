"""Utility helpers for the Serializd-Plex service."""

from __future__ import annotations

import re
from urllib.parse import unquote, urljoin, urlparse, urlencode, parse_qsl, urlunparse


_REDACTION_PATTERNS = (
    (re.compile(r"([?&]X-Plex-Token=)[^&\s]+", re.IGNORECASE), r"\1<redacted>"),
    (re.compile(r"([?&]token=)[^&\s]+", re.IGNORECASE), r"\1<redacted>"),
    (re.compile(r'("X-Plex-Token"\s*:\s*")[^"]+(")', re.IGNORECASE), r"\1<redacted>\2"),
    (re.compile(r'("token"\s*:\s*")[^"]+(")', re.IGNORECASE), r"\1<redacted>\2"),
)

_METADATA_KEY_PATTERNS = (
    (re.compile(r"key=%2F(library%2Fmetadata%2F[\w.-]+)", re.IGNORECASE), True),
    (re.compile(r"key=(/library/metadata%2F[\w.-]+)", re.IGNORECASE), False),
    (re.compile(r"key=(/library/metadata/[\w.-]+)", re.IGNORECASE), False),
    (re.compile(r"/(library/metadata/[\w.-]+)", re.IGNORECASE), True),
)

SERVER_ID_RE = re.compile(r"/server/([^/?&]+)")
PRIVATE_HOST_PATTERNS = (
    re.compile(r"^192\.168\.\d{1,3}\.\d{1,3}$"),
    re.compile(r"^10\.\d{1,3}\.\d{1,3}\.\d{1,3}$"),
    re.compile(r"^172\.(1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3}$"),
)
PROVIDER_HOSTS = frozenset({"discover.provider.plex.tv", "metadata.provider.plex.tv"})
METADATA_QUERY = {"includeGuids": "1", "includeExternalMedia": "1"}


def redact_sensitive(value: str) -> str:
    """Mask Plex tokens in URLs and JSON fragments before logging."""

    if not isinstance(value, str):
        return value
    for pattern, replacement in _REDACTION_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def safe_error_message(error: BaseException | str | None) -> str:
    if not error:
        return "Unknown error"
    return redact_sensitive(str(error))


def is_valid_plex_token(token: object) -> bool:
    if not token or not isinstance(token, str):
        return False
    return 10 <= len(token) <= 500 and re.fullmatch(r"\S+", token) is not None


def is_valid_plex_server_url(url: str | None) -> bool:
    """Return whether an intercepted server URL points at a usable Plex server."""

    if not url:
        return False
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False

    if hostname in {"localhost", "127.0.0.1"}:
        return True
    if any(pattern.match(hostname) for pattern in PRIVATE_HOST_PATTERNS):
        return True
    if hostname in PROVIDER_HOSTS:
        return False
    if hostname == "plex.tv" or hostname.endswith(".plex.tv"):
        return True
    return hostname.endswith(".plex.direct")


def extract_metadata_key(url: str | None) -> str | None:
    """Return the ``/library/metadata/<id>`` key embedded in a Plex URL."""

    if not url or not isinstance(url, str):
        return None
    for pattern, needs_decode in _METADATA_KEY_PATTERNS:
        match = pattern.search(url)
        if not match:
            continue
        if needs_decode:
            decoded = unquote(match.group(1))
            return decoded if decoded.startswith("/") else f"/{decoded}"
        return match.group(1)
    return None


def server_id_from_location(href: str | None) -> str | None:
    if not href:
        return None
    match = SERVER_ID_RE.search(href)
    return match.group(1) if match else None


def server_cache_key(server_id: str) -> str:
    return f"serializd_plex_server_{server_id}"


def page_cache_key(title: str, year: str) -> str:
    return f"{title}-{year}"


def page_context_key(title: str, year: str, plex_key: str | None) -> str:
    if plex_key:
        return f"plex:{plex_key}"
    return page_cache_key(title, year)


def _with_metadata_query(url: str) -> str:
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.update(METADATA_QUERY)
    return urlunparse(parsed._replace(query=urlencode(query)))


def build_plex_api_url(
    scheme: str | None, address: str | None, port: str | int | None, plex_key: str
) -> str | None:
    """Build a metadata URL from discovered connection details, or ``None``."""

    if scheme not in {"http", "https"}:
        return None
    try:
        port_number = int(str(port))
    except (TypeError, ValueError):
        return None
    if not 1 <= port_number <= 65_535:
        return None
    if not address or any(char in address for char in "/?#"):
        return None
    return _with_metadata_query(urljoin(f"{scheme}://{address}:{port_number}", plex_key))


def build_plex_api_url_from_base(base_url: str, plex_key: str) -> str | None:
    """Join a plex key onto a server base (or a sibling metadata URL)."""

    try:
        parsed = urlparse(base_url)
    except ValueError:
        return None
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return _with_metadata_query(urlunparse(parsed._replace(path=plex_key)))


def build_serializd_url(
    base_url: str,
    show_id: int,
    season_id: int | None = None,
    season_number: int | None = None,
    episode_number: int | None = None,
) -> str:
    """Return the Serializd link, ordered show, season, episode."""

    url = f"{base_url.rstrip('/')}/show/{show_id}"
    if season_number is None or season_id is None:
        return url
    url += f"/season/{season_id}/{season_number}"
    if episode_number is not None:
        url += f"/episode/{episode_number}"
    return url
