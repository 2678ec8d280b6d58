"""ScanSession — concurrent per-repository diff scan with incremental results.

One worker task per repository computes ``base..head`` and publishes a
:class:`ScanEvent` on a queue. A join task waits for every worker and only
then enqueues the close sentinel, so ``next_result() is None`` means every
worker has stopped.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Iterable, Sequence

import structlog

from prfleet.git.repo import GitClient
from prfleet.models import EMPTY_DIFF, DiffResult, PrType, RepositoryRef, ScanEvent, ScanState

log = structlog.get_logger("prfleet.engine")

_CLOSED = object()


class ScanSession:
    """Fan-out/fan-in scan over a repository list for one PR type.

    The session is both the result stream (:meth:`next_result`,
    :meth:`stream`) and the cancel handle (:meth:`cancel`, :meth:`aclose`).
    ScanState bookkeeping (:meth:`apply`, :meth:`state`) belongs to the
    consumer; workers never touch it.
    """

    def __init__(
        self,
        repositories: Sequence[RepositoryRef],
        pr_type: PrType,
        git: GitClient,
        ticket_pattern: re.Pattern[str] | None = None,
        *,
        max_concurrency: int | None = None,
        surface_errors: bool = False,
    ) -> None:
        self.repositories = list(repositories)
        self.pr_type = pr_type
        self._git = git
        self._ticket_pattern = ticket_pattern
        self._surface_errors = surface_errors
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

        # one slot per worker plus the sentinel: put_nowait never blocks
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=len(self.repositories) + 1)
        self._token = asyncio.Event()
        self._workers: list[asyncio.Task[None]] = []
        self._join: asyncio.Task[None] | None = None
        self._closed = False

        self._diffs: list[DiffResult | None] = [None] * len(self.repositories)
        self._errors: dict[int, str] = {}

    # ── lifecycle ──────────────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn one worker per repository and the join task."""
        if self._join is not None:
            raise RuntimeError("scan session already started")
        log.info("scan.started", pr_type=self.pr_type.value, repositories=len(self.repositories))
        self._workers = [
            asyncio.create_task(self._worker(i, repo), name=f"scan:{repo.display_name}")
            for i, repo in enumerate(self.repositories)
        ]
        self._join = asyncio.create_task(self._join_workers(), name="scan:join")

    @property
    def started(self) -> bool:
        return self._join is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._token.is_set()

    def cancel(self) -> None:
        """Ask workers to stop; the stream still closes only after they have."""
        if not self._token.is_set():
            log.debug("scan.cancel_requested", pending=self.pending_count)
        self._token.set()

    async def aclose(self, grace: float = 5.0) -> None:
        """Cancel, wait up to *grace* seconds, then hard-cancel stragglers."""
        self.cancel()
        if self._join is None:
            self._closed = True
            return
        done, _ = await asyncio.wait({self._join}, timeout=grace)
        if not done:
            stragglers = [t for t in self._workers if not t.done()]
            log.debug("scan.hard_cancel", stragglers=len(stragglers))
            for task in stragglers:
                task.cancel()
            await self._join
        self._closed = True

    # ── stream ─────────────────────────────────────────────────────────────

    async def next_result(self) -> ScanEvent | None:
        """Block until the next event; ``None`` once the stream has closed.

        Events still queued after :meth:`cancel` are discarded.
        """
        if self._join is None:
            raise RuntimeError("scan session not started")
        while not self._closed:
            item = await self._queue.get()
            if item is _CLOSED:
                self._closed = True
                log.debug("scan.closed")
                break
            if self._token.is_set():
                continue
            return item  # type: ignore[return-value]
        return None

    async def stream(self) -> AsyncIterator[ScanEvent]:
        while True:
            event = await self.next_result()
            if event is None:
                return
            yield event

    # ── consumer-side state ────────────────────────────────────────────────

    def apply(self, event: ScanEvent) -> ScanState:
        self._diffs[event.index] = event.diff
        if event.error:
            self._errors[event.index] = event.error
        return ScanState.of(event.diff)

    @property
    def states(self) -> list[ScanState]:
        return [ScanState.of(d) for d in self._diffs]

    def state(self, index: int) -> ScanState:
        return ScanState.of(self._diffs[index])

    def diff(self, index: int) -> DiffResult | None:
        return self._diffs[index]

    def error(self, index: int) -> str | None:
        return self._errors.get(index)

    @property
    def pending_count(self) -> int:
        return sum(1 for d in self._diffs if d is None)

    def all_settled(self, indices: Iterable[int]) -> bool:
        return all(self._diffs[i] is not None for i in indices)

    # ── workers ────────────────────────────────────────────────────────────

    async def _worker(self, index: int, repo: RepositoryRef) -> None:
        if self._semaphore is None:
            await self._scan_one(index, repo)
            return
        async with self._semaphore:
            await self._scan_one(index, repo)

    async def _scan_one(self, index: int, repo: RepositoryRef) -> None:
        if self._token.is_set():
            return
        head = self.pr_type.head_branch()
        base = self.pr_type.base_branch(repo.main_branch)
        error: str | None = None
        try:
            await self._git.fetch_branches(repo.path, [base, head])
            if self._token.is_set():
                return
            diff = await self._git.diff_branches(repo.path, base, head, self._ticket_pattern)
        except Exception as exc:
            diff = EMPTY_DIFF
            error = str(exc) or type(exc).__name__
            level = log.warning if self._surface_errors else log.debug
            level("scan.worker_failed", repository=repo.display_name, error=error)

        if self._token.is_set():
            return
        self._queue.put_nowait(ScanEvent(index=index, diff=diff, error=error))

    async def _join_workers(self) -> None:
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._queue.put_nowait(_CLOSED)
