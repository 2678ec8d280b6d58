"""PullRunner — check out one branch and fast-forward it in every repository."""

from __future__ import annotations

from collections.abc import Callable, Sequence

import structlog

from prfleet.exceptions import RefNotFoundError
from prfleet.git.repo import GitClient
from prfleet.models import PullResult, PullStatus, RepositoryRef
from prfleet.progress import ProgressReporter

log = structlog.get_logger("prfleet.engine")

PULL_BRANCHES = ("dev", "staging", "main")


def target_branch(branch: str, repo: RepositoryRef) -> str:
    """Map the "main" choice to the repository's own main branch (possibly "master")."""
    return repo.main_branch if branch == "main" else branch


class PullRunner:
    """Pull *branch* across *repositories*, one repository at a time.

    A repository is skipped when the branch is missing or the working tree
    has uncommitted changes; any other failure is recorded and the run goes on.
    """

    def __init__(
        self,
        repositories: Sequence[RepositoryRef],
        branch: str,
        git: GitClient,
        *,
        reporter: ProgressReporter | None = None,
    ) -> None:
        if branch not in PULL_BRANCHES:
            raise ValueError(f"cannot pull {branch!r}; expected one of {', '.join(PULL_BRANCHES)}")
        self.repositories = list(repositories)
        self.branch = branch
        self._git = git
        self.reporter = reporter or ProgressReporter()

    async def run(
        self, on_result: Callable[[PullResult], None] | None = None
    ) -> list[PullResult]:
        results: list[PullResult] = []
        for repo in self.repositories:
            self.reporter.begin_repository(repo.display_name)
            result = await self.pull_one(repo)
            self.reporter.finish_repository(
                result.error or result.status.value,
                failed=result.status is PullStatus.FAILED,
            )
            log.info(
                "pull.result",
                repository=repo.display_name,
                status=result.status.value,
                commits=result.commit_count,
                error=result.error or None,
            )
            results.append(result)
            if on_result is not None:
                on_result(result)
        return results

    async def pull_one(self, repo: RepositoryRef) -> PullResult:
        branch = target_branch(self.branch, repo)
        try:
            if not await self._git.has_branch(repo.path, branch):
                return PullResult(repo, PullStatus.SKIPPED_NO_BRANCH)

            self.reporter.step("Checking working tree...")
            if await self._git.is_dirty(repo.path):
                return PullResult(repo, PullStatus.SKIPPED_DIRTY)

            self.reporter.step(f"Fetching {branch}...")
            try:
                await self._git.fetch_branches(repo.path, [branch])
            except RefNotFoundError:
                return PullResult(repo, PullStatus.SKIPPED_NO_BRANCH)

            self.reporter.step(f"Pulling {branch}...")
            commits = await self._git.checkout_and_pull(repo.path, branch)
        except Exception as exc:
            return PullResult(repo, PullStatus.FAILED, error=str(exc) or type(exc).__name__)

        if commits == 0:
            return PullResult(repo, PullStatus.UP_TO_DATE)
        return PullResult(repo, PullStatus.UPDATED, commit_count=commits)
