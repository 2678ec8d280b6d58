"""BatchPipeline — the release-PR state machine for a repository fleet.

    SELECTING_REPOS → WAITING_FOR_SCANS → CHECKING_EXISTING_PRS
        → AWAITING_CONFIRMATION → PROCESSING → SUMMARIZED

``ERROR`` is reachable from any state and :meth:`BatchPipeline.recover`
returns to the safe state recorded when the error happened.

Scan-phase failures show up as empty diffs; processing-phase failures become
``Failed`` outcomes for that repository only. Authentication is checked once,
eagerly, in :meth:`BatchPipeline.open`.
"""

from __future__ import annotations

import asyncio
import enum
import re
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field

import structlog

from prfleet.core.config import ScanConfig
from prfleet.engines.scanner import ScanSession
from prfleet.exceptions import TransportError
from prfleet.forge.pulls import PullRequestBackend, generate_pr_body
from prfleet.git.repo import GitClient
from prfleet.models import (
    NO_COMMITS,
    NOT_SELECTED,
    BatchOutcome,
    BatchSummary,
    Created,
    Failed,
    PrType,
    PullRequestRef,
    RepositoryRef,
    ScanState,
    Skipped,
    Updated,
)
from prfleet.progress import ProgressReporter

log = structlog.get_logger("prfleet.engine")

STEP_FETCH = "Fetching branches..."
STEP_COMMITS = "Getting commits..."
STEP_CHECK = "Checking for existing PR..."
STEP_UPDATE = "Updating PR..."
STEP_CREATE = "Creating PR..."


class BatchState(enum.Enum):
    SELECTING_REPOS = "selecting_repos"
    WAITING_FOR_SCANS = "waiting_for_scans"
    CHECKING_EXISTING_PRS = "checking_existing_prs"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PROCESSING = "processing"
    SUMMARIZED = "summarized"
    ERROR = "error"


class SelectionSet:
    """Selected repository indices, always iterated in repository order."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._selected: set[int] = set()

    def _check(self, index: int) -> None:
        if not 0 <= index < self._size:
            raise IndexError(f"repository index {index} out of range")

    def toggle(self, index: int) -> bool:
        """Flip *index*; returns whether it is now selected."""
        self._check(index)
        if index in self._selected:
            self._selected.discard(index)
            return False
        self._selected.add(index)
        return True

    def select(self, index: int) -> None:
        self._check(index)
        self._selected.add(index)

    def deselect(self, index: int) -> None:
        self._selected.discard(index)

    def select_all(self) -> None:
        self._selected = set(range(self._size))

    def clear(self) -> None:
        self._selected.clear()

    @property
    def indices(self) -> list[int]:
        return sorted(self._selected)

    def __contains__(self, index: object) -> bool:
        return index in self._selected

    def __iter__(self) -> Iterator[int]:
        return iter(self.indices)

    def __len__(self) -> int:
        return len(self._selected)

    def __bool__(self) -> bool:
        return bool(self._selected)


@dataclass
class ExistingPrSummary:
    """Result of the pre-confirmation check over the selected repositories."""

    existing_prs: dict[int, PullRequestRef] = field(default_factory=dict)
    repos_with_commits: list[int] = field(default_factory=list)
    tickets: tuple[str, ...] = ()


@dataclass
class BatchRun:
    """Processing cursor and the outcomes appended so far."""

    title: str = ""
    current: int = 0
    outcomes: list[BatchOutcome] = field(default_factory=list)


class BatchPipeline:
    """Drive one batch: scan, select, check, confirm, process, summarize."""

    def __init__(
        self,
        repositories: Sequence[RepositoryRef],
        pr_type: PrType,
        git: GitClient,
        pulls: PullRequestBackend,
        *,
        ticket_pattern: re.Pattern[str] | None = None,
        linear_org: str = "attuned",
        scan_options: ScanConfig | None = None,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.repositories = list(repositories)
        self.pr_type = pr_type
        self._git = git
        self._pulls = pulls
        self._ticket_pattern = ticket_pattern
        self._linear_org = linear_org
        self._scan_options = scan_options or ScanConfig()
        self.reporter = reporter or ProgressReporter()

        self.state = BatchState.SELECTING_REPOS
        self.selection = SelectionSet(len(self.repositories))
        self.scan: ScanSession | None = None
        self.existing: ExistingPrSummary | None = None
        self.run_state: BatchRun | None = None
        self.error: str | None = None
        self._safe_state = BatchState.SELECTING_REPOS
        self._closer: asyncio.Task[None] | None = None

    # ── state helpers ──────────────────────────────────────────────────────

    def _require(self, *states: BatchState) -> None:
        if self.state not in states:
            raise RuntimeError(f"operation not allowed in state {self.state.value}")

    def _transition(self, state: BatchState) -> None:
        log.debug("batch.transition", frm=self.state.value, to=state.value)
        self.state = state

    def _fail(self, message: str, safe_state: BatchState) -> None:
        log.warning("batch.error", state=self.state.value, error=message)
        self.error = message
        self._safe_state = safe_state
        self.state = BatchState.ERROR

    def recover(self) -> BatchState:
        """Leave ``ERROR`` for the safe state recorded with the error."""
        self._require(BatchState.ERROR)
        self.error = None
        self._transition(self._safe_state)
        return self.state

    # ── selecting ──────────────────────────────────────────────────────────

    async def open(self) -> None:
        """Check forge credentials, then start scanning every repository.

        ``NotAuthenticatedError`` propagates; nothing is scanned.
        """
        self._require(BatchState.SELECTING_REPOS)
        if self.scan is not None:
            raise RuntimeError("pipeline already open; call reset() first")
        await self._pulls.check_auth()
        self.scan = ScanSession(
            self.repositories,
            self.pr_type,
            self._git,
            self._ticket_pattern,
            max_concurrency=self._scan_options.max_concurrency,
            surface_errors=self._scan_options.surface_errors,
        )
        self.scan.start()

    def select_names(self, names: Iterable[str]) -> None:
        """Select repositories by display name; unknown names raise ``ValueError``."""
        names = list(names)
        by_name = {repo.display_name: i for i, repo in enumerate(self.repositories)}
        unknown = [name for name in names if name not in by_name]
        if unknown:
            raise ValueError("Unknown repositories: " + ", ".join(unknown))
        for name in names:
            self.selection.select(by_name[name])

    def commit_selection(self) -> bool:
        """Move on to waiting for scans; a no-op with nothing selected."""
        self._require(BatchState.SELECTING_REPOS)
        if not self.selection:
            return False
        self._transition(BatchState.WAITING_FOR_SCANS)
        return True

    # ── waiting & checking ─────────────────────────────────────────────────

    async def wait_for_scans(self) -> None:
        """Consume scan results until every selected repository has one.

        The rest of the scan is then cancelled and closed in the background,
        and the existing-PR check runs.
        """
        self._require(BatchState.WAITING_FOR_SCANS)
        scan = self._require_scan()
        selected = self.selection.indices
        while not scan.all_settled(selected):
            event = await scan.next_result()
            if event is None:
                self._fail(
                    "Scan ended before every selected repository reported",
                    BatchState.SELECTING_REPOS,
                )
                return
            scan.apply(event)

        scan.cancel()
        self._closer = asyncio.create_task(scan.aclose(self._scan_options.cancel_grace_seconds))
        self._transition(BatchState.CHECKING_EXISTING_PRS)
        await self._check_existing_prs()

    async def _check_existing_prs(self) -> None:
        scan = self._require_scan()
        head = self.pr_type.head_branch()
        with_commits = [i for i in self.selection if scan.state(i) is ScanState.POPULATED]

        async def lookup(index: int) -> PullRequestRef | None:
            repo = self.repositories[index]
            base = self.pr_type.base_branch(repo.main_branch)
            try:
                return await self._pulls.find_open_pr(repo.path, head, base)
            except Exception as exc:
                log.debug("batch.existing_pr_lookup_failed", repository=repo.display_name, error=str(exc))
                return None

        found = await asyncio.gather(*(lookup(i) for i in with_commits))
        tickets: set[str] = set()
        for i in with_commits:
            tickets.update(scan.diff(i).tickets)  # type: ignore[union-attr]
        self.existing = ExistingPrSummary(
            existing_prs={i: pr for i, pr in zip(with_commits, found) if pr is not None},
            repos_with_commits=with_commits,
            tickets=tuple(sorted(tickets)),
        )
        self._transition(BatchState.AWAITING_CONFIRMATION)

    # ── confirmation & processing ──────────────────────────────────────────

    def confirm(self, title: str = "") -> bool:
        """Start processing; refused when no selected repository has commits."""
        self._require(BatchState.AWAITING_CONFIRMATION)
        if self.existing is None or not self.existing.repos_with_commits:
            return False
        self.run_state = BatchRun(title=title.strip())
        self._transition(BatchState.PROCESSING)
        return True

    async def process_next(self) -> BatchOutcome:
        """Handle the repository under the cursor and advance it."""
        self._require(BatchState.PROCESSING)
        run = self.run_state
        if run is None:
            raise RuntimeError("processing started without a run")
        repo = self.repositories[run.current]
        if run.current in self.selection:
            outcome = await self._process(repo, run.title)
            run.outcomes.append(outcome)
            log.info(
                "batch.outcome",
                repository=repo.display_name,
                status=outcome.label,
                reason=outcome.reason,
                url=outcome.pr_url,
            )
        else:
            outcome = BatchOutcome(repo, Skipped(NOT_SELECTED))

        run.current += 1
        if run.current >= len(self.repositories):
            self._transition(BatchState.SUMMARIZED)
        return outcome

    async def process_all(self) -> BatchSummary:
        while self.state is BatchState.PROCESSING:
            await self.process_next()
        return self.summary

    async def _process(self, repo: RepositoryRef, title: str) -> BatchOutcome:
        head = self.pr_type.head_branch()
        base = self.pr_type.base_branch(repo.main_branch)
        reporter = self.reporter
        reporter.begin_repository(repo.display_name)
        try:
            reporter.step(STEP_FETCH)
            await self._git.fetch_branches(repo.path, [base, head])

            reporter.step(STEP_COMMITS)
            diff = await self._git.diff_branches(repo.path, base, head, self._ticket_pattern)
            if diff.is_empty:
                outcome = BatchOutcome(repo, Skipped(NO_COMMITS))
            else:
                pr_title = title or self.pr_type.default_title(repo.main_branch)
                body = generate_pr_body(diff.tickets, self._linear_org)

                reporter.step(STEP_CHECK)
                existing = await self._pulls.find_open_pr(repo.path, head, base)
                if existing is not None:
                    reporter.step(STEP_UPDATE)
                    pr = await self._pulls.update_pr(repo.path, existing.number, pr_title, body)
                    outcome = BatchOutcome(repo, Updated(), pr.url, diff.tickets)
                else:
                    reporter.step(STEP_CREATE)
                    pr = await self._pulls.create_pr(repo.path, head, base, pr_title, body)
                    outcome = BatchOutcome(repo, Created(), pr.url, diff.tickets)
        except Exception as exc:
            outcome = BatchOutcome(repo, Failed(str(exc) or type(exc).__name__))

        reporter.finish_repository(outcome.reason or outcome.label, failed=outcome.is_failed)
        return outcome

    @property
    def outcomes(self) -> list[BatchOutcome]:
        return list(self.run_state.outcomes) if self.run_state else []

    @property
    def summary(self) -> BatchSummary:
        return BatchSummary(outcomes=self.outcomes)

    # ── whole run / teardown ───────────────────────────────────────────────

    async def run(self, names: Iterable[str] | None = None, title: str = "") -> BatchSummary:
        """Non-interactive batch: *names* (or every repository), no prompt."""
        await self.open()
        try:
            if names is None:
                self.selection.select_all()
            else:
                self.select_names(list(names))
            if not self.commit_selection():
                return BatchSummary()
            await self.wait_for_scans()
            if self.state is BatchState.ERROR:
                raise TransportError(self.error or "scan failed")
            if not self.confirm(title):
                return BatchSummary()
            return await self.process_all()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Stop the scan session and wait for its background close."""
        if self._closer is not None:
            await self._closer
            self._closer = None
        if self.scan is not None and not self.scan.closed:
            await self.scan.aclose(self._scan_options.cancel_grace_seconds)

    async def reset(self) -> None:
        """Discard scan, selection and outcomes; ``open()`` starts over."""
        await self.aclose()
        self.scan = None
        self.existing = None
        self.run_state = None
        self.error = None
        self.selection.clear()
        self._transition(BatchState.SELECTING_REPOS)

    def _require_scan(self) -> ScanSession:
        if self.scan is None:
            raise RuntimeError("pipeline not open")
        return self.scan
