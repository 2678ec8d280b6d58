"""ActionsMonitor — recent GitHub Actions runs across the fleet.

Every repository is queried concurrently; a join task closes the result
queue once all lookups have returned. A repository whose lookup fails simply
contributes no runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone

import structlog

from prfleet.forge.actions import ActionsBackend
from prfleet.models import ActionsEntry, RepositoryRef, WorkflowRun

log = structlog.get_logger("prfleet.engine")

DEFAULT_WINDOW = timedelta(hours=48)
DEFAULT_RUN_LIMIT = 10

_CLOSED = object()


def select_runs(runs: Iterable[WorkflowRun], cutoff: datetime) -> list[WorkflowRun]:
    """Queued and in-progress runs plus the latest completed run per workflow.

    *runs* are expected newest first; runs last updated before *cutoff* are
    dropped.
    """
    kept: list[WorkflowRun] = []
    completed_seen: set[str] = set()
    for run in runs:
        if run.updated_at < cutoff:
            continue
        if run.is_active:
            kept.append(run)
        elif run.status == "completed" and run.workflow_name not in completed_seen:
            completed_seen.add(run.workflow_name)
            kept.append(run)
    return kept


def matches_filter(entry: ActionsEntry, text: str) -> bool:
    """Case-insensitive substring match on repository, workflow, branch or title."""
    needle = text.lower()
    if not needle:
        return True
    run = entry.run
    fields = (entry.repository.display_name, run.workflow_name, run.head_branch, run.display_title)
    return any(needle in value.lower() for value in fields)


class ActionsMonitor:
    def __init__(
        self,
        repositories: Sequence[RepositoryRef],
        actions: ActionsBackend,
        *,
        window: timedelta = DEFAULT_WINDOW,
        limit: int = DEFAULT_RUN_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repositories = list(repositories)
        self._actions = actions
        self.window = window
        self.limit = limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch(self) -> list[ActionsEntry]:
        """One snapshot of the fleet's runs, newest update first."""
        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=len(self.repositories) + 1)

        async def lookup(repo: RepositoryRef) -> None:
            try:
                runs = await self._actions.list_workflow_runs(repo.path, self.limit)
            except Exception as exc:
                log.debug("actions.lookup_failed", repository=repo.display_name, error=str(exc))
                runs = []
            queue.put_nowait((repo, runs))

        workers = [asyncio.create_task(lookup(repo)) for repo in self.repositories]

        async def join() -> None:
            await asyncio.gather(*workers, return_exceptions=True)
            queue.put_nowait(_CLOSED)

        joiner = asyncio.create_task(join())
        cutoff = self._clock() - self.window
        entries: list[ActionsEntry] = []
        try:
            while (item := await queue.get()) is not _CLOSED:
                repo, runs = item  # type: ignore[misc]
                entries.extend(ActionsEntry(repo, run) for run in select_runs(runs, cutoff))
        finally:
            if not joiner.done():
                for task in workers:
                    task.cancel()
                await asyncio.gather(joiner, return_exceptions=True)

        entries.sort(key=lambda e: e.run.updated_at, reverse=True)
        log.info("actions.fetched", repositories=len(self.repositories), runs=len(entries))
        return entries
