"""GitHub Actions collaborator — recent workflow runs of a repository."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field, ValidationError

from prfleet.exceptions import ParseError
from prfleet.forge.github_client import GitHubClient
from prfleet.forge.pulls import forge_errors
from prfleet.forge.remote import RepoSlugs
from prfleet.git.repo import GitClient
from prfleet.models import WorkflowRun

log = structlog.get_logger("prfleet.forge")


@runtime_checkable
class ActionsBackend(Protocol):
    async def list_workflow_runs(self, path: str, limit: int = 10) -> list[WorkflowRun]: ...


class _RunPayload(BaseModel):
    id: int
    display_title: str = ""
    name: str | None = None
    status: str | None = None
    conclusion: str | None = None
    head_branch: str | None = None
    event: str = ""
    html_url: str
    created_at: datetime
    updated_at: datetime

    def to_run(self) -> WorkflowRun:
        return WorkflowRun(
            run_id=self.id,
            display_title=self.display_title,
            workflow_name=self.name or "",
            status=self.status or "",
            conclusion=self.conclusion or "",
            head_branch=self.head_branch or "",
            event=self.event,
            url=self.html_url,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class _RunsPage(BaseModel):
    total_count: int = 0
    workflow_runs: list[_RunPayload] = Field(default_factory=list)


class ActionsClient:
    """GitHub REST implementation of :class:`ActionsBackend`."""

    def __init__(self, github: GitHubClient, git: GitClient) -> None:
        self._github = github
        self._slugs = RepoSlugs(git)

    async def list_workflow_runs(self, path: str, limit: int = 10) -> list[WorkflowRun]:
        """The *limit* most recent runs, newest first."""
        owner, repo = await self._slugs.get(path)
        with forge_errors("list workflow runs"):
            data = await self._github.get(
                f"/repos/{owner}/{repo}/actions/runs", {"per_page": limit}
            )
        try:
            page = _RunsPage.model_validate(data)
        except ValidationError as exc:
            raise ParseError(f"unexpected workflow runs payload: {exc}") from exc
        log.debug("github.workflow_runs", repo=f"{owner}/{repo}", count=len(page.workflow_runs))
        return [run.to_run() for run in page.workflow_runs]
