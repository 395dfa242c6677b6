"""Read access to the Plex web page the badge is rendered into."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

TITLE_SELECTOR = '[data-testid="metadata-title"]'
LINE1_SELECTOR = '[data-testid="metadata-line1"]'
LINE2_SELECTOR = '[data-testid="metadata-line2"]'
RATINGS_SELECTOR = '[data-testid="metadata-ratings"]'
READY_ATTRIBUTE = "data-serializd-plex-ready"

TITLE_YEAR_SUFFIX_RE = re.compile(r"\s*\(\d{4}\)\s*$")
YEAR_RE = re.compile(r"(\d{4})")
EPISODE_HINT_RES = (
    re.compile(r"\bEpisode\b", re.IGNORECASE),
    re.compile(r"\bE\d{1,2}\b", re.IGNORECASE),
)
SEASON_EPISODE_LINE_RE = re.compile(
    r"\bSeason\s+\d+\b|\bEpisode\s+\d+\b|\bS\s*\d+\s*[·•:\-\s]*E\s*\d+\b",
    re.IGNORECASE,
)
COMPACT_SEASON_EPISODE_RE = re.compile(
    r"\bS\s*0?(\d{1,2})\s*[·•:\-\s]*E\s*0?(\d{1,3})\b", re.IGNORECASE
)
SEASON_RES = (
    re.compile(r"\bSeason\s+(\d{1,2})\b", re.IGNORECASE),
    re.compile(r"\bS\s*0?(\d{1,2})\b", re.IGNORECASE),
)
EPISODE_RES = (
    re.compile(r"\bEpisode\s+(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\bE\s*0?(\d{1,3})\b", re.IGNORECASE),
)
MAX_BODY_LINES = 6
BLOCK_TAGS = frozenset(
    {
        "address", "article", "aside", "blockquote", "br", "dd", "details", "div",
        "dl", "dt", "fieldset", "figcaption", "figure", "footer", "form", "h1", "h2",
        "h3", "h4", "h5", "h6", "header", "hr", "li", "main", "nav", "ol", "p",
        "pre", "section", "summary", "table", "td", "th", "tr", "ul",
    }
)
HIDDEN_TAGS = frozenset({"script", "style", "template", "noscript"})


@dataclass(slots=True)
class SeasonEpisodeHint:
    """Season/episode numbers read from visible page text."""

    season_number: int | None = None
    episode_number: int | None = None
    source_text: str = ""


def _first_match(patterns: tuple[re.Pattern[str], ...], text: str) -> int | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


def parse_season_episode_text(text: str) -> SeasonEpisodeHint:
    """Pull season/episode numbers out of text such as ``S1 · E2``."""

    compact = COMPACT_SEASON_EPISODE_RE.search(text)
    if compact:
        return SeasonEpisodeHint(int(compact.group(1)), int(compact.group(2)), text[:400])
    return SeasonEpisodeHint(
        _first_match(SEASON_RES, text), _first_match(EPISODE_RES, text), text[:400]
    )


def block_text_lines(root: Tag) -> list[str]:
    """Visible text split into lines at block elements, like ``innerText``.

    Inline siblings such as ``<span>S2</span> · <span>E5</span>`` stay on one line.
    """

    lines: list[str] = []
    current: list[str] = []

    def flush() -> None:
        text = " ".join("".join(current).split())
        if text:
            lines.append(text)
        current.clear()

    def walk(node: Tag) -> None:
        for child in node.children:
            if isinstance(child, Tag):
                if child.name in HIDDEN_TAGS:
                    continue
                if child.name in BLOCK_TAGS:
                    flush()
                    walk(child)
                    flush()
                else:
                    walk(child)
            elif isinstance(child, NavigableString) and not isinstance(
                child, PreformattedString
            ):
                current.append(str(child))

    walk(root)
    flush()
    return lines


class HostPage:
    """A Plex web page snapshot: its location and its render tree."""

    def __init__(self, href: str = "", html: str = "") -> None:
        self.href = href
        self.document = BeautifulSoup(html or "", "html.parser")

    def replace(self, html: str, *, href: str | None = None) -> None:
        """Swap in a re-rendered document, optionally at a new location."""

        self.document = BeautifulSoup(html or "", "html.parser")
        if href is not None:
            self.href = href

    def select_one(self, selector: str) -> Tag | None:
        return self.document.select_one(selector)

    def text_of(self, selector: str) -> str:
        element = self.select_one(selector)
        return element.get_text() if element is not None else ""

    @property
    def title_element(self) -> Tag | None:
        return self.select_one(TITLE_SELECTOR)

    def extract_title(self) -> str | None:
        element = self.title_element
        if element is None:
            return None
        return TITLE_YEAR_SUFFIX_RE.sub("", element.get_text().strip()) or None

    def extract_year(self) -> str | None:
        element = self.select_one(LINE1_SELECTOR)
        if element is None:
            return None
        match = YEAR_RE.search(element.get_text())
        return match.group(1) if match else None

    def is_likely_episode_page(self) -> bool:
        text = " ".join(
            self.text_of(selector)
            for selector in (LINE1_SELECTOR, LINE2_SELECTOR, TITLE_SELECTOR)
        )
        return any(pattern.search(text) for pattern in EPISODE_HINT_RES)

    def season_episode_hint(self) -> SeasonEpisodeHint:
        """Infer season/episode context from the title area and body text."""

        title = self.title_element
        parent = title.parent if title is not None else None
        candidates = [
            self.text_of(LINE1_SELECTOR),
            self.text_of(LINE2_SELECTOR),
            title.get_text() if title is not None else "",
            parent.get_text(" ") if isinstance(parent, Tag) else "",
        ]
        lines = [text.strip() for text in candidates if text.strip()]

        body = self.document.body or self.document
        body_lines = [
            line
            for line in block_text_lines(body)
            if SEASON_EPISODE_LINE_RE.search(line)
        ][:MAX_BODY_LINES]

        return parse_season_episode_text(" • ".join([*lines, *body_lines]))

    def set_readiness_marker(self, version: str) -> dict[str, object]:
        """Stamp the ``<html>`` element so drivers can tell the session is live."""

        marker = {"version": version, "ts": int(time.time() * 1000), "href": self.href}
        root = self.document.find("html")
        if root is None:
            root = self.document.new_tag("html")
            for child in list(self.document.contents):
                root.append(child.extract())
            self.document.append(root)
        root[READY_ATTRIBUTE] = json.dumps(marker)
        return marker

    def readiness_marker(self) -> dict[str, object] | None:
        root = self.document.find("html")
        if root is None or not root.has_attr(READY_ATTRIBUTE):
            return None
        return json.loads(root[READY_ATTRIBUTE])

    def render(self) -> str:
        return str(self.document)
