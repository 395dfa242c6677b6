"""Bounded fixed-backoff retries of the page pipeline."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

RetryCallback = Callable[[str], Awaitable[Any]]


class RetryScheduler:
    """Re-runs the pipeline for one href at a time on a fixed delay schedule.

    At most ``len(delays)`` attempts happen per href and only one timer is ever
    pending; asking again while one is pending is a no-op. A request for a
    different href starts a fresh schedule.
    """

    def __init__(
        self,
        delays: Sequence[float],
        current_href: Callable[[], str],
        callback: RetryCallback,
        *,
        call_later: Callable[..., asyncio.TimerHandle] | None = None,
    ) -> None:
        self._delays = tuple(delays)
        self._current_href = current_href
        self._callback = callback
        self._call_later = call_later
        self._href: str | None = None
        self._attempts = 0
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def href(self) -> str | None:
        return self._href

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def exhausted(self) -> bool:
        return self._attempts >= len(self._delays)

    def schedule(self, reason: str) -> bool:
        """Arm the next retry for the current href; return whether one was armed."""

        href = self._current_href()
        if self._href != href:
            self.clear("href-changed")
            self._href = href

        if self._handle is not None:
            return False

        if self.exhausted:
            logger.debug("Retry budget exhausted for %s (%s)", href, reason)
            return False

        delay = self._delays[self._attempts]
        self._attempts += 1
        logger.debug(
            "Retry %s/%s for %s in %.3fs (%s)",
            self._attempts,
            len(self._delays),
            href,
            delay,
            reason,
        )
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._handle = call_later(delay, self._fire, href, reason)
        return True

    def clear(self, reason: str = "unspecified") -> None:
        """Cancel any pending timer and forget the tracked href."""

        if self._handle is not None:
            self._handle.cancel()
        if self._href is not None or self._attempts:
            logger.debug(
                "Retry state cleared (%s) for %s after %s attempts",
                reason,
                self._href,
                self._attempts,
            )
        self._href = None
        self._attempts = 0
        self._handle = None

    def cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    def _fire(self, href: str, reason: str) -> None:
        self._handle = None
        if self._current_href() != href:
            self.clear("href-changed-before-retry-fired")
            return
        task = asyncio.ensure_future(self._callback(f"retry:{reason}:{self._attempts}"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
