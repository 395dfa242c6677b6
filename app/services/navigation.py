"""Detection of single-page-app navigation in the Plex web client."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

HISTORY_EVENTS = frozenset({"hashchange", "popstate"})


class NavigationMonitor:
    """Turns render-tree churn and history events into pipeline runs.

    Mutations are debounced so a burst of re-renders produces one run; history
    events run immediately. Any href change resets the session's dedup state
    before the run starts.
    """

    def __init__(
        self,
        current_href: Callable[[], str],
        on_navigate: Callable[[str], None],
        run: Callable[[str], Awaitable[Any]],
        *,
        debounce_seconds: float = 0.5,
    ) -> None:
        self._current_href = current_href
        self._on_navigate = on_navigate
        self._run = run
        self._debounce_seconds = debounce_seconds
        self._last_observed_href = current_href()
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def last_observed_href(self) -> str:
        return self._last_observed_href

    @property
    def debounce_pending(self) -> bool:
        return self._debounce_handle is not None

    def on_mutation(self) -> None:
        """Record render-tree churn; the run fires once the burst settles."""

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(
            self._debounce_seconds, self._flush_mutations
        )

    def on_history_event(self, kind: str) -> asyncio.Task[Any]:
        """Handle ``hashchange``/``popstate`` without debouncing."""

        if kind not in HISTORY_EVENTS:
            raise ValueError(f"Unsupported history event: {kind}")
        href = self._current_href()
        logger.debug("%s: %s -> %s", kind, self._last_observed_href, href)
        self._last_observed_href = href
        self._on_navigate(kind)
        return self._spawn(kind)

    def stop(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        for task in list(self._tasks):
            task.cancel()

    def _flush_mutations(self) -> None:
        self._debounce_handle = None
        href = self._current_href()
        href_changed = href != self._last_observed_href
        if href_changed:
            logger.debug("URL changed via render: %s -> %s", self._last_observed_href, href)
            self._last_observed_href = href
            self._on_navigate("mutation-url-change")
        self._spawn("mutation-url-change" if href_changed else "mutation-dom-change")

    def _spawn(self, trigger: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(self._run(trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
