"""MergeRunner — list open release PRs across the fleet and merge a selection."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

import structlog

from prfleet.exceptions import PrFleetError
from prfleet.forge.pulls import PullRequestBackend, open_release_prs
from prfleet.models import MergeEntry, MergeResult, PrType, RepoPrStatus, RepositoryRef
from prfleet.progress import ProgressReporter

log = structlog.get_logger("prfleet.engine")


class MergeRunner:
    def __init__(
        self,
        repositories: Sequence[RepositoryRef],
        pulls: PullRequestBackend,
        *,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.repositories = list(repositories)
        self._pulls = pulls
        self.reporter = reporter or ProgressReporter()

    async def list_open(self) -> list[MergeEntry]:
        """Open dev → staging and staging → main PRs, in repository order.

        Repositories whose lookup fails are left out.
        """
        await self._pulls.check_auth()

        async def lookup(repo: RepositoryRef) -> RepoPrStatus | None:
            try:
                return await open_release_prs(self._pulls, repo.path, repo.main_branch)
            except PrFleetError as exc:
                log.debug("merge.lookup_failed", repository=repo.display_name, error=str(exc))
                return None

        statuses = await asyncio.gather(*(lookup(repo) for repo in self.repositories))

        entries: list[MergeEntry] = []
        for repo, status in zip(self.repositories, statuses, strict=True):
            if status is None:
                continue
            for pr_type, pr in (
                (PrType.DEV_TO_STAGING, status.dev_to_staging),
                (PrType.STAGING_TO_MAIN, status.staging_to_main),
            ):
                if pr is not None:
                    entries.append(MergeEntry(repo, pr.number, pr.title, pr.url, pr_type))
        return entries

    async def merge(self, entries: Iterable[MergeEntry]) -> list[MergeResult]:
        """Merge *entries* one at a time; a failure does not stop the rest."""
        results: list[MergeResult] = []
        for entry in entries:
            result = MergeResult(
                repository=entry.repository,
                number=entry.number,
                title=entry.title,
                pr_type=entry.pr_type,
                url=entry.url,
            )
            self.reporter.begin_repository(entry.repository.display_name)
            self.reporter.step(f"Merging #{entry.number}...")
            try:
                await self._pulls.merge_pr(entry.repository.path, entry.number)
            except Exception as exc:
                result.error = str(exc) or type(exc).__name__
                log.warning(
                    "merge.failed",
                    repository=entry.repository.display_name,
                    number=entry.number,
                    error=result.error,
                )
            self.reporter.finish_repository(result.error or "", failed=not result.success)
            results.append(result)
        return results
