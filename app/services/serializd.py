"""Helpers for reading show ratings from Serializd."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from bs4 import BeautifulSoup

from ..models import RatingResult
from ..utils import safe_error_message
from .exceptions import ProxyError

if TYPE_CHECKING:
    from .proxy import FetchProxy

logger = logging.getLogger(__name__)


def _season_map(show_details: Any) -> dict[int, int]:
    seasons = show_details.get("seasons") if isinstance(show_details, dict) else None
    if not isinstance(seasons, list):
        return {}
    mapping: dict[int, int] = {}
    for season in seasons:
        if not isinstance(season, dict):
            continue
        number = season.get("seasonNumber")
        season_id = season.get("id")
        # bool is an int subclass; neither value may be one.
        if (
            isinstance(number, int)
            and isinstance(season_id, int)
            and not isinstance(number, bool)
            and not isinstance(season_id, bool)
        ):
            mapping[number] = season_id
    return mapping


def parse_show_page(
    html: str, *, show_id: int | None = None, url: str | None = None
) -> RatingResult:
    """Extract the average rating and season map from a Serializd show page.

    The page embeds its data in a ``__NEXT_DATA__`` JSON script. The average
    rating is on a 10 point scale and is halved for display. A page without a
    usable rating still yields the season map so season links can be built.
    """

    soup = BeautifulSoup(html or "", "html.parser")
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None or not script.string:
        return RatingResult(
            success=False, error="Could not parse Serializd data", url=url, show_id=show_id
        )

    try:
        next_data = json.loads(script.string)
    except json.JSONDecodeError:
        return RatingResult(
            success=False, error="Error parsing Serializd data", url=url, show_id=show_id
        )

    data: Any = next_data
    for key in ("props", "pageProps", "data"):
        data = data.get(key) if isinstance(data, dict) else None
    if not isinstance(data, dict):
        data = {}

    season_map = _season_map(data.get("showDetails"))
    average = data.get("averageRating")
    if not isinstance(average, (int, float)) or isinstance(average, bool):
        return RatingResult(
            success=False,
            error="No rating available",
            url=url,
            show_id=show_id,
            season_map=season_map,
        )

    return RatingResult(
        success=True,
        rating=average / 2,
        rating_out_of_10=average,
        url=url,
        show_id=show_id,
        season_map=season_map,
    )


class RatingResolver:
    """Turns a show-level TMDB id into a Serializd rating and season map."""

    def __init__(self, proxy: "FetchProxy") -> None:
        self._proxy = proxy

    async def resolve(self, show_id: int) -> RatingResult | None:
        """Return the lookup result, or ``None`` when Serializd is unreachable.

        An unsuccessful result is still returned because it may carry the season
        map.
        """

        try:
            result = await self._proxy.fetch_external_rating(show_id)
        except ProxyError as exc:
            logger.error("Error fetching rating for %s: %s", show_id, safe_error_message(exc))
            return None
        if not result.success:
            logger.info("Serializd lookup for %s: %s", show_id, result.error)
        return result
