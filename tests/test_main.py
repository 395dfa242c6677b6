from __future__ import annotations

import json
from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import register_routes
from app.models import RatingResult, ResolvedIdentity
from app.services.proxy import FetchProxy
from app.services.session import SessionRegistry, build_session_factory

TOKEN = "plex-token-1234567890"
SHOW_HREF = (
    "https://app.plex.tv/desktop/#!/server/abc123/details"
    "?key=%2Flibrary%2Fmetadata%2F55"
)
SHOW_HTML = """<html><body><div class="hero"><div class="titles">
<h1 data-testid="metadata-title">Dark (2017)</h1>
<span data-testid="metadata-line1">2017</span>
</div><div data-testid="metadata-ratings"></div></div></body></html>"""


class MemoryCache:
    """In-memory stand-in for the SQL backed caches."""

    def __init__(self) -> None:
        self.entries: dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return self.entries.get(key)

    async def set(self, key: str, entry: Any) -> Any:
        self.entries[key] = entry
        return entry

    async def cleanup(self) -> int:
        return 0


class StubIdentityResolver:
    async def resolve(self, plex_key: str, server: Any, run: Any = None) -> ResolvedIdentity | None:
        if plex_key == "/library/metadata/55":
            return ResolvedIdentity(show_id=70523)
        return None


class StubRatingResolver:
    async def resolve(self, show_id: int) -> RatingResult:
        return RatingResult(success=True, rating=4.3, show_id=show_id)


def serializd_handler(request: httpx.Request) -> httpx.Response:
    data = json.dumps({"props": {"pageProps": {"data": {"averageRating": 8.0}}}})
    return httpx.Response(200, text=f'<script id="__NEXT_DATA__">{data}</script>')


def build_app() -> FastAPI:
    settings = Settings(_env_file=None, TEST_HOOKS=True)
    app = FastAPI()
    register_routes(app)
    app.state.proxy = FetchProxy(
        settings, httpx.AsyncClient(transport=httpx.MockTransport(serializd_handler))
    )
    app.state.sessions = SessionRegistry(
        build_session_factory(
            settings,
            StubIdentityResolver(),  # type: ignore[arg-type]
            StubRatingResolver(),  # type: ignore[arg-type]
            MemoryCache(),  # type: ignore[arg-type]
            MemoryCache(),  # type: ignore[arg-type]
        )
    )
    return app


def test_healthcheck() -> None:
    with TestClient(build_app()) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_proxy_route_dispatches_messages() -> None:
    with TestClient(build_app()) as client:
        rating = client.post("/proxy", json={"action": "fetchSerializdRating", "tmdbId": 70523})
        unknown = client.post("/proxy", json={"action": "nope"})
        missing = client.post("/proxy", json={"tmdbId": 1})

    assert rating.status_code == 200
    assert rating.json()["rating"] == 4.0
    assert unknown.json() == {"error": "Unsupported action: nope"}
    assert missing.status_code == 400


def test_navigate_renders_badge_and_reports_state() -> None:
    with TestClient(build_app()) as client:
        navigated = client.post(
            "/sessions/tab-1/navigate", json={"href": SHOW_HREF, "html": SHOW_HTML}
        )
        state = client.get("/sessions/tab-1")

    assert navigated.status_code == 200
    payload = navigated.json()
    assert payload["badge"] is True
    assert payload["href"] == SHOW_HREF
    assert 'href="https://www.serializd.com/show/70523"' in payload["html"]
    assert payload["ready"]["version"] == "1.0.2"
    assert state.json()["badge"] is True


def test_navigate_rejects_unknown_events() -> None:
    with TestClient(build_app()) as client:
        response = client.post(
            "/sessions/tab-1/navigate",
            json={"href": SHOW_HREF, "html": SHOW_HTML, "event": "pushstate"},
        )

    assert response.status_code == 422


def test_intercepted_route_validates_urls() -> None:
    with TestClient(build_app()) as client:
        rejected = client.post(
            "/sessions/tab-1/intercepted", json={"url": "http://10.0.0.2:32400/library/sections"}
        )
        accepted = client.post(
            "/sessions/tab-1/intercepted",
            json={
                "url": "https://10-0-0-2.f00d.plex.direct:32400/library/metadata/55",
                "headers": {"X-Plex-Token": TOKEN},
            },
        )

    assert rejected.status_code == 400
    assert accepted.status_code == 200
    assert accepted.json() == {"accepted": True, "server_context": True}


def test_unknown_sessions_and_teardown() -> None:
    with TestClient(build_app()) as client:
        assert client.get("/sessions/missing").status_code == 404
        assert client.post("/sessions/missing/mutate", json={"html": ""}).status_code == 404

        client.post("/sessions/tab-2/navigate", json={"href": SHOW_HREF, "html": SHOW_HTML})
        mutated = client.post("/sessions/tab-2/mutate", json={"html": SHOW_HTML})
        closed = client.delete("/sessions/tab-2")
        after = client.get("/sessions/tab-2")
        closed_again = client.delete("/sessions/tab-2")

    assert mutated.status_code == 202
    assert closed.json() == {"status": "closed"}
    assert after.status_code == 404
    assert closed_again.status_code == 404


def test_intercepted_route_accepts_derived_signal() -> None:
    with TestClient(build_app()) as client:
        response = client.post(
            "/sessions/tab-3/intercepted",
            json={
                "url": "http://192.168.1.10:32400/library/metadata/55",
                "serverUrl": "http://192.168.1.10:32400",
                "serverId": "abc123",
                "token": TOKEN,
            },
        )
        rejected = client.post(
            "/sessions/tab-4/intercepted",
            json={
                "url": "https://evil.example.com/library/metadata/55",
                "serverUrl": "https://evil.example.com",
                "token": TOKEN,
            },
        )

    assert response.json() == {"accepted": True, "server_context": True}
    # Token is kept but the server is unusable and the tab has no /server/<id>.
    assert rejected.json() == {"accepted": True, "server_context": False}
