"""Tests for reading Plex page snapshots."""

from __future__ import annotations

from app.page import (
    READY_ATTRIBUTE,
    HostPage,
    block_text_lines,
    parse_season_episode_text,
)

SHOW_HTML = """
<html><body>
  <div class="hero">
    <div class="titles">
      <h1 data-testid="metadata-title">Game of Thrones (2011)</h1>
      <span data-testid="metadata-line1">2011 &middot; TV-MA</span>
    </div>
    <div data-testid="metadata-ratings"></div>
  </div>
</body></html>
"""

EPISODE_HTML = """
<html><body>
  <div class="hero">
    <div class="titles">
      <h1 data-testid="metadata-title">The Ghost of Harrenhal</h1>
      <span data-testid="metadata-line1">Game of Thrones</span>
      <span data-testid="metadata-line2">S2 &middot; E5</span>
    </div>
  </div>
</body></html>
"""


def test_title_and_year_extraction() -> None:
    page = HostPage("https://app.plex.tv/desktop/#!/a", SHOW_HTML)

    assert page.extract_title() == "Game of Thrones"
    assert page.extract_year() == "2011"
    assert not page.is_likely_episode_page()


def test_missing_elements_yield_none() -> None:
    page = HostPage("https://app.plex.tv/desktop/#!/a", "<html><body></body></html>")

    assert page.extract_title() is None
    assert page.extract_year() is None


def test_episode_page_hint_from_compact_marker() -> None:
    page = HostPage("https://app.plex.tv/desktop/#!/a", EPISODE_HTML)

    hint = page.season_episode_hint()

    assert page.is_likely_episode_page()
    assert page.extract_year() is None
    assert (hint.season_number, hint.episode_number) == (2, 5)


def test_body_hint_keeps_inline_markup_on_one_line() -> None:
    html = """
<html><body>
  <script>var marker = "S9 · E9";</script>
  <div class="hero">
    <div class="titles">
      <h1 data-testid="metadata-title">Pilot</h1>
      <span data-testid="metadata-line1">Dark</span>
    </div>
  </div>
  <nav class="crumbs"><span>S2</span> &middot; <span>E5</span></nav>
</body></html>
"""
    page = HostPage("https://app.plex.tv/desktop/#!/a", html)

    hint = page.season_episode_hint()

    assert (hint.season_number, hint.episode_number) == (2, 5)


def test_block_text_lines_break_only_at_blocks() -> None:
    page = HostPage(
        "",
        "<div><p>Season <b>3</b></p><p>Next<br>line</p><!-- S1 E1 --></div>",
    )

    assert block_text_lines(page.document) == ["Season 3", "Next", "line"]


def test_parse_season_episode_text_variants() -> None:
    assert parse_season_episode_text("Season 3").season_number == 3
    assert parse_season_episode_text("Season 3").episode_number is None
    long_form = parse_season_episode_text("Season 1 Episode 10")
    assert (long_form.season_number, long_form.episode_number) == (1, 10)
    compact = parse_season_episode_text("S01E04 · Pilot")
    assert (compact.season_number, compact.episode_number) == (1, 4)
    assert parse_season_episode_text("Drama, 2011").season_number is None


def test_replace_swaps_document_and_location() -> None:
    page = HostPage("https://app.plex.tv/desktop/#!/a", SHOW_HTML)

    page.replace(EPISODE_HTML, href="https://app.plex.tv/desktop/#!/b")
    assert page.href == "https://app.plex.tv/desktop/#!/b"
    assert page.extract_title() == "The Ghost of Harrenhal"

    page.replace(SHOW_HTML)
    assert page.href == "https://app.plex.tv/desktop/#!/b"


def test_readiness_marker_round_trip() -> None:
    page = HostPage("https://app.plex.tv/desktop/#!/a", SHOW_HTML)

    marker = page.set_readiness_marker("1.0.2")

    assert page.readiness_marker() == marker
    assert marker["version"] == "1.0.2"
    assert marker["href"] == "https://app.plex.tv/desktop/#!/a"
    assert READY_ATTRIBUTE in page.render()


def test_readiness_marker_wraps_fragment() -> None:
    page = HostPage("https://app.plex.tv/desktop/#!/a", "<div>fragment</div>")

    page.set_readiness_marker("1.0.2")

    assert page.readiness_marker() is not None
    assert page.render().startswith("<html")
