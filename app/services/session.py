"""Per-tab orchestration of the page-context resolution pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from ..config import Settings
from ..models import (
    InterceptedRequest,
    PageContext,
    ResolvedIdentity,
    ServerContext,
    ShowCacheEntry,
)
from ..page import HostPage
from ..utils import (
    build_serializd_url,
    extract_metadata_key,
    is_valid_plex_server_url,
    is_valid_plex_token,
    redact_sensitive,
    safe_error_message,
    server_id_from_location,
)
from .cache import ServerCache, ShowCache
from .injector import Badge, BadgeInjector
from .navigation import NavigationMonitor
from .plex import IdentityResolver
from .retry import RetryScheduler
from .runs import RunController, RunToken, StaleRunError
from .serializd import RatingResolver

logger = logging.getLogger(__name__)


class PageSession:
    """Everything one Plex tab needs to keep its Serializd badge current.

    The session owns the run controller, retry scheduler, navigation monitor,
    in-flight runs per key and the server context learned from intercepted requests.
    """

    def __init__(
        self,
        settings: Settings,
        page: HostPage,
        *,
        identity_resolver: IdentityResolver,
        rating_resolver: RatingResolver,
        show_cache: ShowCache,
        server_cache: ServerCache,
        injector: BadgeInjector | None = None,
        session_id: str = "default",
    ) -> None:
        self.session_id = session_id
        self.page = page
        self._settings = settings
        self._identity_resolver = identity_resolver
        self._rating_resolver = rating_resolver
        self._show_cache = show_cache
        self._server_cache = server_cache
        self._injector = injector or BadgeInjector(settings.badge_icon_url)
        self._serializd_url = str(settings.serializd_url)

        self.runs = RunController(self._current_href)
        self.retry = RetryScheduler(
            settings.retry_delays_seconds, self._current_href, self.process_page
        )
        self.monitor = NavigationMonitor(
            self._current_href,
            self._reset_for_navigation,
            self.process_page,
            debounce_seconds=settings.mutation_debounce_seconds,
        )

        self._in_flight: dict[str, RunToken] = {}
        self._last_processed_key: str | None = None
        self._last_known_token: str | None = None
        self._last_api_url: str | None = None
        self._intercepted_server: InterceptedRequest | None = None

    @property
    def last_processed_key(self) -> str | None:
        return self._last_processed_key

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def has_badge(self) -> bool:
        return self._injector.has_badge(self.page)

    def _current_href(self) -> str:
        return self.page.href

    async def start(self) -> None:
        """Sweep stale server entries, mark the page ready and run once."""

        await self._server_cache.cleanup()
        self._set_readiness_marker()
        await self.process_page("init")

    async def stop(self) -> None:
        self.monitor.stop()
        self.retry.clear("session-stopped")
        self.retry.cancel_tasks()

    def navigate(self, href: str, html: str, *, event: str = "popstate") -> asyncio.Task[Any]:
        """Apply a history navigation: new location and document, immediate run."""

        self.page.replace(html, href=href)
        return self.monitor.on_history_event(event)

    def mutate(self, html: str, *, href: str | None = None) -> None:
        """Apply a re-render of the page; the run is debounced."""

        self.page.replace(html, href=href)
        self.monitor.on_mutation()

    def handle_intercepted(self, message: InterceptedRequest) -> None:
        """Learn server context from a metadata request the page itself made."""

        token = message.token if is_valid_plex_token(message.token) else None
        if token:
            self._last_known_token = token

        # Kept even when the server is unusable; key extraction may need it.
        if message.url:
            self._last_api_url = message.url

        if message.server_url and is_valid_plex_server_url(message.server_url):
            self._intercepted_server = InterceptedRequest(
                url=message.url,
                server_url=message.server_url,
                server_id=message.server_id,
                token=token,
            )
        else:
            logger.debug(
                "Ignoring intercepted server URL %s",
                redact_sensitive(message.server_url or ""),
            )

    def plex_key(self) -> str | None:
        """Metadata key for the page; the location wins over intercepted requests."""

        url_key = extract_metadata_key(self.page.href)
        intercepted_key = extract_metadata_key(self._last_api_url)
        if url_key and intercepted_key and url_key != intercepted_key:
            logger.debug(
                "Plex key conflict, using location key %s over %s", url_key, intercepted_key
            )
        return url_key or intercepted_key

    def page_context(self) -> PageContext:
        return PageContext(
            title=self.page.extract_title(),
            year=self.page.extract_year(),
            plex_key=self.plex_key(),
            href=self.page.href,
        )

    def server_context(self) -> ServerContext | None:
        location_server_id = server_id_from_location(self.page.href)
        intercepted = self._intercepted_server

        url = intercepted.server_url if intercepted else None
        if not url and location_server_id:
            url = f"{str(self._settings.plex_tv_api_url).rstrip('/')}/{location_server_id}"
        token = (intercepted.token if intercepted else None) or self._last_known_token
        server_id = (intercepted.server_id if intercepted else None) or location_server_id

        if not url or not token:
            return None
        return ServerContext(url=url, token=token, server_id=server_id)

    async def process_page(self, trigger: str = "unknown") -> bool:
        """Resolve the current page and render its badge; ``True`` once shown.

        Never raises: stale runs end silently and every other failure schedules
        a bounded retry.
        """

        context = self.page_context()
        logger.debug(
            "Processing %s (trigger=%s, title=%s, year=%s, key=%s)",
            context.href,
            trigger,
            context.title,
            context.year,
            context.plex_key,
        )

        if not context.is_show_page:
            if context.title or context.plex_key:
                self.retry.schedule("missing-metadata")
            return False

        key = context.identity_key
        if key == self._last_processed_key and self.has_badge():
            logger.debug("Skipping already processed page %s", key)
            return False
        holder = self._in_flight.get(key)
        if holder is not None and not holder.is_stale():
            logger.debug("Skipping page %s, resolution in flight", key)
            return False

        run = self.runs.begin()
        self._in_flight[key] = run
        self._injector.clear(self.page)
        try:
            return await self._resolve_and_render(context, run)
        except StaleRunError as exc:
            logger.debug("Abandoned run %s at %s", exc.run_id, exc.stage)
            return False
        except Exception as exc:  # pragma: no cover - background safety net
            logger.error("Error processing page: %s", safe_error_message(exc))
            self.retry.schedule("process-error")
            return False
        finally:
            # A newer run for the same key may have taken over.
            if self._in_flight.get(key) is run:
                del self._in_flight[key]

    async def _resolve_and_render(self, context: PageContext, run: RunToken) -> bool:
        identity = ResolvedIdentity()
        if context.plex_key:
            resolved = await self._identity_resolver.resolve(
                context.plex_key, self.server_context(), run
            )
            if resolved is not None:
                identity = resolved
        run.checkpoint("after-plex-fetch")

        identity = self._overlay_page_hint(identity, context)

        cached = await self._show_cache.get(context.cache_key)
        show_id = identity.show_id
        # Cached show ids must not poison season/episode deep links.
        if show_id is None and cached is not None and not identity.has_season_episode_context:
            show_id = cached.show_id
        if show_id is None:
            logger.debug(
                "No show id for %s (server context: %s)",
                context.identity_key,
                self.server_context() is not None,
            )
            self.retry.schedule("no-show-id")
            return False
        run.checkpoint("after-show-id-resolution")

        season_number = identity.season_number
        episode_number = identity.episode_number
        season_id = identity.season_id
        cached_matches = cached is not None and cached.show_id == show_id
        if season_id is None and season_number is not None and cached_matches:
            season_id = cached.season_map.get(season_number)

        is_episode = season_number is not None
        url = build_serializd_url(
            self._serializd_url, show_id, season_id, season_number, episode_number
        )

        # A cached season map without this season means the provider has no id for it.
        if cached_matches and (
            not is_episode
            or season_id is not None
            or season_number not in cached.season_map
        ):
            logger.debug("Cache hit for %s -> %s", context.cache_key, url)
            return self._render(
                run,
                context,
                Badge(url=url, show_id=show_id, rating=cached.rating, is_episode=is_episode),
                "cache-hit",
            )

        result = await self._rating_resolver.resolve(show_id)
        run.checkpoint("after-rating-fetch")

        season_map = result.season_map if result is not None else {}
        if season_id is None and season_number is not None and season_number in season_map:
            season_id = season_map[season_number]
            url = build_serializd_url(
                self._serializd_url, show_id, season_id, season_number, episode_number
            )

        rating = result.rating if result is not None and result.success else None
        if result is not None:
            await self._show_cache.set(
                context.cache_key,
                ShowCacheEntry(show_id=show_id, url=url, rating=rating, season_map=season_map),
            )

        return self._render(
            run,
            context,
            Badge(url=url, show_id=show_id, rating=rating, is_episode=is_episode),
            "fresh-with-rating" if rating else "fresh-no-rating",
        )

    def _overlay_page_hint(
        self, identity: ResolvedIdentity, context: PageContext
    ) -> ResolvedIdentity:
        """Fill missing season/episode numbers from visible text, never overriding."""

        should_infer = (identity.season_number is None and context.year is None) or (
            identity.episode_number is None and self.page.is_likely_episode_page()
        )
        if not should_infer:
            return identity

        hint = self.page.season_episode_hint()
        update: dict[str, int] = {}
        if identity.season_number is None and hint.season_number is not None:
            update["season_number"] = hint.season_number
        if identity.episode_number is None and hint.episode_number is not None:
            update["episode_number"] = hint.episode_number
        if not update:
            return identity
        logger.debug("Season/episode context inferred from page text: %s", update)
        return identity.model_copy(update=update)

    def _render(
        self, run: RunToken, context: PageContext, badge: Badge, outcome: str
    ) -> bool:
        run.checkpoint(f"before-{outcome}-inject")
        if self._injector.inject(self.page, badge):
            self._last_processed_key = context.identity_key
            self.retry.clear(f"inject-success-{outcome}")
            return True
        self.retry.schedule(f"inject-failed-{outcome}")
        return False

    def _reset_for_navigation(self, reason: str) -> None:
        self._last_processed_key = None
        self.retry.clear(reason)
        self._set_readiness_marker()

    def _set_readiness_marker(self) -> None:
        if self._settings.test_hooks:
            self.page.set_readiness_marker(self._settings.app_version)


SessionFactory = Callable[[str], PageSession]


class SessionRegistry:
    """Live page sessions keyed by tab/session id.

    Tabs that vanish without a DELETE are stopped once they have been idle for
    longer than ``idle_ttl_seconds``.
    """

    def __init__(
        self,
        factory: SessionFactory,
        *,
        idle_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._sessions: dict[str, PageSession] = {}
        self._last_seen: dict[str, float] = {}
        self._idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    def _is_idle(self, session_id: str, now: float) -> bool:
        if self._idle_ttl_seconds is None:
            return False
        last_seen = self._last_seen.get(session_id, now)
        return now - last_seen > self._idle_ttl_seconds

    def get(self, session_id: str) -> PageSession | None:
        now = self._clock()
        session = self._sessions.get(session_id)
        if session is None or self._is_idle(session_id, now):
            return None
        self._last_seen[session_id] = now
        return session

    async def get_or_create(self, session_id: str) -> tuple[PageSession, bool]:
        await self.prune_idle()
        async with self._lock:
            self._last_seen[session_id] = self._clock()
            session = self._sessions.get(session_id)
            if session is not None:
                return session, False
            session = self._factory(session_id)
            self._sessions[session_id] = session
        await session.start()
        return session, True

    async def prune_idle(self) -> list[str]:
        """Stop and forget every session idle past the TTL."""

        now = self._clock()
        expired = [
            session_id for session_id in self._sessions if self._is_idle(session_id, now)
        ]
        for session_id in expired:
            logger.info("Expiring idle session %s", session_id)
            await self.remove(session_id)
        return expired

    async def remove(self, session_id: str) -> bool:
        self._last_seen.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.stop()
        return True

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)


def build_session_factory(
    settings: Settings,
    identity_resolver: IdentityResolver,
    rating_resolver: RatingResolver,
    show_cache: ShowCache,
    server_cache: ServerCache,
) -> SessionFactory:
    injector = BadgeInjector(settings.badge_icon_url)

    def factory(session_id: str) -> PageSession:
        return PageSession(
            settings,
            HostPage(),
            identity_resolver=identity_resolver,
            rating_resolver=rating_resolver,
            show_cache=show_cache,
            server_cache=server_cache,
            injector=injector,
            session_id=session_id,
        )

    return factory
