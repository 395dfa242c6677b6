"""Cooperative cancellation of superseded pipeline runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


class StaleRunError(Exception):
    """Raised at a checkpoint once a newer run or a navigation superseded this one."""

    def __init__(self, stage: str, run_id: int) -> None:
        super().__init__(f"run {run_id} went stale at {stage}")
        self.stage = stage
        self.run_id = run_id


@dataclass(slots=True, frozen=True)
class RunToken:
    """Snapshot of one run: its id and the href it started on."""

    run_id: int
    href: str
    controller: "RunController"

    def is_stale(self) -> bool:
        return (
            self.run_id != self.controller.current_run_id
            or self.controller.current_href() != self.href
        )

    def checkpoint(self, stage: str) -> None:
        """Abort the run by raising ``StaleRunError`` if it has been superseded."""

        if self.is_stale():
            logger.debug(
                "Run %s stale at %s (started on %s, now %s)",
                self.run_id,
                stage,
                self.href,
                self.controller.current_href(),
            )
            raise StaleRunError(stage, self.run_id)


class RunController:
    """Hands out monotonically numbered run tokens; only the latest stays live."""

    def __init__(self, current_href: Callable[[], str]) -> None:
        self._current_href = current_href
        self._run_id = 0

    @property
    def current_run_id(self) -> int:
        return self._run_id

    def current_href(self) -> str:
        return self._current_href()

    def begin(self) -> RunToken:
        self._run_id += 1
        return RunToken(self._run_id, self._current_href(), self)
