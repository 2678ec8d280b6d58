"""SingleRepoRunner — preview and submit a release PR for one repository."""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from prfleet.forge.pulls import PullRequestBackend, generate_pr_body
from prfleet.git.repo import GitClient
from prfleet.models import DiffResult, PrType, PullRequestRef, RepositoryRef
from prfleet.progress import ProgressReporter

log = structlog.get_logger("prfleet.engine")


@dataclass(frozen=True)
class SinglePreview:
    repository: RepositoryRef
    pr_type: PrType
    diff: DiffResult
    existing: PullRequestRef | None = None

    @property
    def head(self) -> str:
        return self.pr_type.head_branch()

    @property
    def base(self) -> str:
        return self.pr_type.base_branch(self.repository.main_branch)

    @property
    def is_empty(self) -> bool:
        return self.diff.is_empty


class SingleRepoRunner:
    """Release PR for the current repository.

    Unlike the batch engine, errors are not classified: they propagate to
    the caller as-is.
    """

    def __init__(
        self,
        repository: RepositoryRef,
        pr_type: PrType,
        git: GitClient,
        pulls: PullRequestBackend,
        *,
        ticket_pattern: re.Pattern[str] | None = None,
        linear_org: str = "attuned",
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.repository = repository
        self.pr_type = pr_type
        self._git = git
        self._pulls = pulls
        self._ticket_pattern = ticket_pattern
        self._linear_org = linear_org
        self.reporter = reporter or ProgressReporter()

    async def preview(self) -> SinglePreview:
        """Fetch, diff and look up an open PR; nothing is written."""
        await self._pulls.check_auth()
        repo = self.repository
        head = self.pr_type.head_branch()
        base = self.pr_type.base_branch(repo.main_branch)

        self.reporter.begin_repository(repo.display_name)
        self.reporter.step("Fetching branches...")
        await self._git.fetch_branches(repo.path, [base, head])
        self.reporter.step("Getting commits...")
        diff = await self._git.diff_branches(repo.path, base, head, self._ticket_pattern)
        existing = None
        if not diff.is_empty:
            self.reporter.step("Checking for existing PR...")
            existing = await self._pulls.find_open_pr(repo.path, head, base)
        self.reporter.finish_repository()
        return SinglePreview(repo, self.pr_type, diff, existing)

    async def submit(self, title: str, preview: SinglePreview) -> tuple[PullRequestRef, bool]:
        """Create the PR, or update the one found by :meth:`preview`.

        Returns ``(pr, updated)``.
        """
        if preview.is_empty:
            raise ValueError("No commits to merge")
        repo = self.repository
        title = title.strip() or self.pr_type.default_title(repo.main_branch)
        body = generate_pr_body(preview.diff.tickets, self._linear_org)

        self.reporter.begin_repository(repo.display_name)
        if preview.existing is not None:
            self.reporter.step("Updating PR...")
            pr = await self._pulls.update_pr(repo.path, preview.existing.number, title, body)
            updated = True
        else:
            self.reporter.step("Creating PR...")
            pr = await self._pulls.create_pr(repo.path, preview.head, preview.base, title, body)
            updated = False
        self.reporter.finish_repository(pr.url)
        log.info("single.submitted", repository=repo.display_name, url=pr.url, updated=updated)
        return pr, updated
