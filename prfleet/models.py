"""Data model shared by the differ, scanner and batch engines.

These are pure data structures: no I/O, no collaborator references.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union


@dataclass(frozen=True)
class RepositoryRef:
    """One repository of the fleet, fixed after discovery."""

    path: str
    display_name: str  # e.g. "frontend/web" or "backend/services/billing"
    main_branch: str = "main"
    parent: str | None = None  # parent repository name for nested repos

    @property
    def category(self) -> str:
        return self.display_name.split("/", 1)[0]

    def with_parent(self, parent: str) -> RepositoryRef:
        return RepositoryRef(self.path, self.display_name, self.main_branch, parent)


@dataclass(frozen=True)
class CommitRecord:
    """A head-only commit: short hash, summary line and the tickets it references."""

    short_hash: str
    summary: str
    tickets: tuple[str, ...] = ()


@dataclass(frozen=True)
class DiffResult:
    """Commits present in head but not in base, plus their ticket union."""

    commits: tuple[CommitRecord, ...] = ()
    tickets: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.commits

    def __len__(self) -> int:
        return len(self.commits)


EMPTY_DIFF = DiffResult()


class ScanState(enum.Enum):
    PENDING = "pending"
    EMPTY = "empty"
    POPULATED = "populated"

    @classmethod
    def of(cls, diff: DiffResult | None) -> ScanState:
        if diff is None:
            return cls.PENDING
        return cls.EMPTY if diff.is_empty else cls.POPULATED


@dataclass(frozen=True)
class ScanEvent:
    """One message on a scan stream: repository *index* now has *diff*.

    *error* carries the swallowed fetch/diff failure, if any; the diff is
    then empty.
    """

    index: int
    diff: DiffResult
    error: str | None = None


class PrType(enum.Enum):
    """The branch pair a release PR goes through."""

    DEV_TO_STAGING = "dev-staging"
    STAGING_TO_MAIN = "staging-main"

    @classmethod
    def from_slug(cls, slug: str) -> PrType:
        return cls(slug)

    def head_branch(self) -> str:
        if self is PrType.DEV_TO_STAGING:
            return "dev"
        return "staging"

    def base_branch(self, main_branch: str) -> str:
        if self is PrType.DEV_TO_STAGING:
            return "staging"
        return main_branch

    def display(self, main_branch: str = "main") -> str:
        return f"{self.head_branch()} → {self.base_branch(main_branch)}"

    def default_title(self, main_branch: str = "main") -> str:
        return self.display(main_branch)


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    url: str
    title: str = ""
    state: str = "open"


@dataclass(frozen=True)
class RepoPrStatus:
    """Open release PRs of a single repository."""

    dev_to_staging: PullRequestRef | None = None
    staging_to_main: PullRequestRef | None = None

    @property
    def has_any(self) -> bool:
        return self.dev_to_staging is not None or self.staging_to_main is not None


# ── batch outcome (closed sum type) ──────────────────────────────────────


@dataclass(frozen=True)
class Created:
    pass


@dataclass(frozen=True)
class Updated:
    pass


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: str


BatchStatus = Union[Created, Updated, Skipped, Failed]

NOT_SELECTED = "Not selected"
NO_COMMITS = "No commits to merge"


@dataclass(frozen=True)
class BatchOutcome:
    """Terminal classification of one repository in a batch run."""

    repository: RepositoryRef
    status: BatchStatus
    pr_url: str | None = None
    tickets: tuple[str, ...] = ()

    @property
    def is_success(self) -> bool:
        return isinstance(self.status, (Created, Updated))

    @property
    def is_skipped(self) -> bool:
        return isinstance(self.status, Skipped)

    @property
    def is_failed(self) -> bool:
        return isinstance(self.status, Failed)

    @property
    def reason(self) -> str:
        match self.status:
            case Skipped(reason=reason):
                return reason
            case Failed(error=error):
                return error
            case Created() | Updated():
                return ""

    @property
    def label(self) -> str:
        match self.status:
            case Created():
                return "created"
            case Updated():
                return "updated"
            case Skipped():
                return "skipped"
            case Failed():
                return "failed"


# ── merge mode ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MergeEntry:
    repository: RepositoryRef
    number: int
    title: str
    url: str
    pr_type: PrType


@dataclass
class MergeResult:
    repository: RepositoryRef
    number: int
    title: str
    pr_type: PrType
    url: str = ""
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class BatchSummary:
    """Counts shown at the end of a batch run."""

    outcomes: list[BatchOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.is_success)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.is_skipped)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.is_failed)

    @property
    def urls(self) -> list[str]:
        return [o.pr_url for o in self.outcomes if o.is_success and o.pr_url]


# ── pull mode ────────────────────────────────────────────────────────────


class PullStatus(enum.Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    SKIPPED_NO_BRANCH = "skipped_no_branch"
    SKIPPED_DIRTY = "skipped_dirty"
    FAILED = "failed"


@dataclass(frozen=True)
class PullResult:
    """Outcome of checking out and pulling one repository."""

    repository: RepositoryRef
    status: PullStatus
    commit_count: int = 0  # only for UPDATED
    error: str = ""  # only for FAILED

    @property
    def is_skipped(self) -> bool:
        return self.status in (PullStatus.SKIPPED_NO_BRANCH, PullStatus.SKIPPED_DIRTY)


# ── actions monitor ──────────────────────────────────────────────────────


ACTIVE_RUN_STATUSES = frozenset({"in_progress", "queued"})


@dataclass(frozen=True)
class WorkflowRun:
    run_id: int
    display_title: str
    workflow_name: str
    status: str  # "queued" | "in_progress" | "completed" | ...
    conclusion: str
    head_branch: str
    event: str
    url: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES


@dataclass(frozen=True)
class ActionsEntry:
    repository: RepositoryRef
    run: WorkflowRun
