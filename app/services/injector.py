"""Idempotent placement of the Serializd badge in the host page."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from bs4 import Tag

from ..page import (
    LINE1_SELECTOR,
    LINE2_SELECTOR,
    RATINGS_SELECTOR,
    HostPage,
)
from ..utils import redact_sensitive

logger = logging.getLogger(__name__)

WRAPPER_CLASS = "serializd-link-wrapper"
FALLBACK_CLASS = "serializd-fallback-container"
INLINE_ANCHOR_RES = (
    re.compile(r"\bSeason\s+\d+\b", re.IGNORECASE),
    re.compile(r"\bSeason\s+\d+\s+Episode\s+\d+\b", re.IGNORECASE),
    re.compile(r"\bS\s*\d+\s*[·•:\-\s]*E\s*\d+\b", re.IGNORECASE),
)


@dataclass(slots=True)
class Badge:
    """What to render: the link target and optional rating."""

    url: str
    show_id: int
    rating: float | None = None
    is_episode: bool = False


class BadgeInjector:
    """Places one badge per page, replacing any earlier one."""

    def __init__(self, icon_url: str) -> None:
        self._icon_url = icon_url

    def clear(self, page: HostPage) -> int:
        """Remove every previously injected badge and fallback container."""

        removed = 0
        # Containers first; a wrapper inside one goes with it.
        for selector in (f".{FALLBACK_CLASS}", f".{WRAPPER_CLASS}"):
            for element in page.document.select(selector):
                element.decompose()
                removed += 1
        return removed

    def inject(self, page: HostPage, badge: Badge) -> bool:
        """Render ``badge`` into the best available target; ``False`` if none."""

        target = page.select_one(RATINGS_SELECTOR)
        mode = "metadata-ratings"
        inline_anchor: Tag | None = None

        if target is None and badge.is_episode:
            inline_anchor = self.find_inline_anchor(page)
            if inline_anchor is not None:
                target = inline_anchor
                mode = "season-episode-inline"

        if target is None:
            title = page.title_element
            if title is not None:
                target = page.document.new_tag("div", attrs={"class": [FALLBACK_CLASS]})
                title.insert_after(target)
                mode = "title-fallback"

        if target is None:
            logger.debug(
                "No injection target for %s (episode=%s)",
                redact_sensitive(badge.url),
                badge.is_episode,
            )
            return False

        target.append(self._build(page, badge, inline=inline_anchor is not None))
        logger.debug("Injected badge for %s via %s", redact_sensitive(badge.url), mode)
        return True

    @staticmethod
    def find_inline_anchor(page: HostPage) -> Tag | None:
        """Find a heading/line near the title mentioning the season or episode."""

        title = page.title_element
        if title is None or title.parent is None:
            return None
        scope = title.parent.parent if isinstance(title.parent.parent, Tag) else title.parent

        candidates: list[Tag] = []
        for selector in (LINE1_SELECTOR, LINE2_SELECTOR):
            element = scope.select_one(selector)
            if element is not None:
                candidates.append(element)
        candidates.extend(scope.select("h1, h2, h3"))

        for element in candidates:
            text = element.get_text().strip()
            if any(pattern.search(text) for pattern in INLINE_ANCHOR_RES):
                return element
        return None

    def has_badge(self, page: HostPage) -> bool:
        return page.select_one(f".{WRAPPER_CLASS}") is not None

    def _build(self, page: HostPage, badge: Badge, *, inline: bool) -> Tag:
        document = page.document
        wrapper_classes = [WRAPPER_CLASS]
        if inline:
            wrapper_classes.append("serializd-inline-wrapper")
        link = document.new_tag(
            "a",
            attrs={
                "href": badge.url,
                "target": "_blank",
                "rel": "noopener noreferrer",
                "class": wrapper_classes,
            },
        )

        container_attrs: dict[str, object] = {"class": ["serializd-rating-container"]}
        if badge.is_episode:
            container_attrs = {
                "class": ["serializd-rating-container", "serializd-episode"],
                "title": "View season/episode on Serializd",
            }
        container = document.new_tag("div", attrs=container_attrs)
        container.append(
            document.new_tag(
                "img",
                attrs={
                    "src": self._icon_url,
                    "width": "16px",
                    "height": "16px",
                    "class": ["serializd-logo"],
                },
            )
        )
        if badge.rating:
            rating = document.new_tag("span", attrs={"class": ["serializd-rating"]})
            rating.string = f"{badge.rating:.2f}"
            container.append(rating)

        link.append(container)
        return link
