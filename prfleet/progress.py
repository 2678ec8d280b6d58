"""Progress reporting for batch runs: current repository and step label."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

log = structlog.get_logger("prfleet.progress")


@dataclass
class StepProgress:
    repository: str
    step: str
    status: str = "running"  # "running" | "completed" | "failed"
    start_time: float | None = None
    end_time: float | None = None
    detail: str = ""

    @property
    def duration(self) -> float | None:
        if self.start_time is not None and self.end_time is not None:
            return round(self.end_time - self.start_time, 2)
        return None


class ProgressReporter:
    """Track the step each repository is on; callbacks see every change.

    A step label is announced *before* the blocking call it names, so a slow
    network call shows up as the current step instead of a frozen screen.
    """

    def __init__(self) -> None:
        self.current_repository: str = ""
        self.current_step: str = ""
        self.steps: list[StepProgress] = []
        self.callbacks: list[Callable[[StepProgress], None]] = []

    def begin_repository(self, name: str) -> None:
        self._close_current("completed")
        self.current_repository = name
        self.current_step = ""

    def step(self, label: str) -> None:
        self._close_current("completed")
        self.current_step = label
        p = StepProgress(
            repository=self.current_repository,
            step=label,
            start_time=time.monotonic(),
        )
        self.steps.append(p)
        self._notify(p)

    def finish_repository(self, detail: str = "", failed: bool = False) -> None:
        self._close_current("failed" if failed else "completed", detail)
        self.current_repository = ""
        self.current_step = ""

    def get_summary(self) -> dict[str, Any]:
        return {
            "steps": [
                {
                    "repository": p.repository,
                    "step": p.step,
                    "status": p.status,
                    "duration": p.duration,
                    "detail": p.detail,
                }
                for p in self.steps
            ],
        }

    def _close_current(self, status: str, detail: str = "") -> None:
        if not self.steps:
            return
        p = self.steps[-1]
        if p.status != "running":
            return
        p.status = status
        p.end_time = time.monotonic()
        p.detail = detail
        self._notify(p)

    def _notify(self, p: StepProgress) -> None:
        for cb in self.callbacks:
            try:
                cb(p)
            except Exception:
                log.debug("progress.callback_error", step=p.step, exc_info=True)
