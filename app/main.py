"""Entry point for the FastAPI-powered Serializd-Plex badge service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Literal

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import settings
from .database import Database
from .models import InterceptedRequest
from .services.cache import ServerCache, ShowCache
from .services.plex import IdentityResolver
from .services.proxy import FetchProxy, intercept_request
from .services.serializd import RatingResolver
from .services.session import PageSession, SessionRegistry, build_session_factory

logging.basicConfig(level=logging.INFO)
if settings.debug_navigation:
    logging.getLogger("app").setLevel(logging.DEBUG)
logger = logging.getLogger(__name__)

app: FastAPI


class NavigateRequest(BaseModel):
    href: str
    html: str = ""
    event: Literal["popstate", "hashchange"] = "popstate"


class MutateRequest(BaseModel):
    html: str = ""
    href: str | None = None


class InterceptedPayload(BaseModel):
    """Either a raw metadata request (url, headers) or an already derived signal."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    server_url: str | None = Field(default=None, alias="serverUrl")
    server_id: str | None = Field(default=None, alias="serverId")
    token: str | None = None


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(15.0, connect=5.0),
            follow_redirects=True,
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    proxy = FetchProxy(settings, http_client)
    show_cache = ShowCache.from_settings(settings, database.session_factory)
    server_cache = ServerCache.from_settings(settings, database.session_factory)
    registry = SessionRegistry(
        build_session_factory(
            settings,
            IdentityResolver(settings, proxy, server_cache),
            RatingResolver(proxy),
            show_cache,
            server_cache,
        ),
        idle_ttl_seconds=settings.session_idle_ttl_seconds,
    )

    fastapi_app.state.database = database
    fastapi_app.state.proxy = proxy
    fastapi_app.state.sessions = registry

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await registry.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Serializd ratings and deep links for the Plex web client",
        version=settings.app_version,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_proxy(fastapi_app: FastAPI) -> FetchProxy:
    proxy = getattr(fastapi_app.state, "proxy", None)
    if not isinstance(proxy, FetchProxy):
        raise RuntimeError("Fetch proxy not initialised")
    return proxy


def get_registry(fastapi_app: FastAPI) -> SessionRegistry:
    registry = getattr(fastapi_app.state, "sessions", None)
    if not isinstance(registry, SessionRegistry):
        raise RuntimeError("Session registry not initialised")
    return registry


def describe_session(session: PageSession) -> dict[str, Any]:
    return {
        "id": session.session_id,
        "href": session.page.href,
        "html": session.page.render(),
        "badge": session.has_badge(),
        "ready": session.page.readiness_marker(),
    }


def register_routes(fastapi_app: FastAPI) -> None:
    def _require_session(session_id: str) -> PageSession:
        session = get_registry(fastapi_app).get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return session

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/proxy")
    async def proxy_message(message: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(message.get("action"), str):
            raise HTTPException(status_code=400, detail="Missing action")
        return await get_proxy(fastapi_app).handle_message(message)

    @fastapi_app.post("/sessions/{session_id}/navigate")
    async def navigate(session_id: str, payload: NavigateRequest) -> dict[str, Any]:
        session, _ = await get_registry(fastapi_app).get_or_create(session_id)
        await session.navigate(payload.href, payload.html, event=payload.event)
        return describe_session(session)

    @fastapi_app.post("/sessions/{session_id}/mutate", status_code=202)
    async def mutate(session_id: str, payload: MutateRequest) -> dict[str, Any]:
        session = _require_session(session_id)
        session.mutate(payload.html, href=payload.href)
        return {"status": "scheduled", "debounce_ms": settings.mutation_debounce_ms}

    @fastapi_app.post("/sessions/{session_id}/intercepted")
    async def intercepted(session_id: str, payload: InterceptedPayload) -> dict[str, Any]:
        if payload.server_url:
            signal: InterceptedRequest | None = InterceptedRequest(
                url=payload.url,
                server_url=payload.server_url,
                server_id=payload.server_id,
                token=payload.token,
            )
        else:
            signal = intercept_request(payload.url, payload.headers)
        if signal is None:
            raise HTTPException(
                status_code=400, detail="Not a Plex metadata request"
            )
        session, _ = await get_registry(fastapi_app).get_or_create(session_id)
        session.handle_intercepted(signal)
        return {
            "accepted": True,
            "server_context": session.server_context() is not None,
        }

    @fastapi_app.get("/sessions/{session_id}")
    async def session_state(session_id: str) -> dict[str, Any]:
        return describe_session(_require_session(session_id))

    @fastapi_app.delete("/sessions/{session_id}")
    async def close_session(session_id: str) -> dict[str, str]:
        removed = await get_registry(fastapi_app).remove(session_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Unknown session")
        return {"status": "closed"}


app = create_app()
