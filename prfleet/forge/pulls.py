"""Pull-request collaborator — find, create, update and merge release PRs."""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Sequence
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from prfleet.exceptions import NotAuthenticatedError, ParseError, TransportError
from prfleet.forge.github_client import GitHubClient, RateLimitError
from prfleet.forge.remote import RepoSlugs
from prfleet.git.repo import GitClient
from prfleet.models import PrType, PullRequestRef, RepoPrStatus

log = structlog.get_logger("prfleet.forge")


@runtime_checkable
class PullRequestBackend(Protocol):
    """Operations the engines need from the forge."""

    async def check_auth(self) -> None: ...

    async def find_open_pr(self, path: str, head: str, base: str) -> PullRequestRef | None: ...

    async def create_pr(
        self, path: str, head: str, base: str, title: str, body: str
    ) -> PullRequestRef: ...

    async def update_pr(self, path: str, number: int, title: str, body: str) -> PullRequestRef: ...

    async def merge_pr(self, path: str, number: int) -> None: ...


def generate_pr_body(tickets: Sequence[str], linear_org: str) -> str:
    """PR body with one Linear "Closes" link per ticket; empty without tickets."""
    if not tickets:
        return ""
    lines = [
        f"### - Closes [{t}](https://linear.app/{linear_org}/issue/{t.lower()})" for t in tickets
    ]
    return "# Tickets\n\n" + "\n".join(lines)


async def open_release_prs(
    backend: PullRequestBackend, path: str, main_branch: str
) -> RepoPrStatus:
    """Open dev → staging and staging → main PRs of one repository."""
    found: dict[PrType, PullRequestRef | None] = {}
    for pr_type in PrType:
        found[pr_type] = await backend.find_open_pr(
            path, pr_type.head_branch(), pr_type.base_branch(main_branch)
        )
    return RepoPrStatus(
        dev_to_staging=found[PrType.DEV_TO_STAGING],
        staging_to_main=found[PrType.STAGING_TO_MAIN],
    )


async def create_or_update(
    backend: PullRequestBackend,
    path: str,
    head: str,
    base: str,
    title: str,
    body: str,
) -> tuple[PullRequestRef, bool]:
    """Update the open PR for *head* → *base* if there is one, else create it.

    Returns ``(pr, updated)``.
    """
    existing = await backend.find_open_pr(path, head, base)
    if existing is not None:
        return await backend.update_pr(path, existing.number, title, body), True
    return await backend.create_pr(path, head, base, title, body), False


class _PullPayload(BaseModel):
    number: int
    html_url: str
    title: str = ""
    state: str = "open"

    def to_ref(self) -> PullRequestRef:
        return PullRequestRef(
            number=self.number, url=self.html_url, title=self.title, state=self.state
        )


class _MergePayload(BaseModel):
    merged: bool
    message: str = ""


class PullRequestClient:
    """GitHub REST implementation of :class:`PullRequestBackend`.

    Repositories are addressed by local path; owner/repo come from the
    ``origin`` remote URL and are cached per path.
    """

    def __init__(self, github: GitHubClient, git: GitClient) -> None:
        self._github = github
        self._slugs = RepoSlugs(git)

    async def check_auth(self) -> None:
        if not self._github.token:
            raise NotAuthenticatedError()
        with forge_errors("auth check"):
            await self._github.get("/user")

    async def find_open_pr(self, path: str, head: str, base: str) -> PullRequestRef | None:
        owner, repo = await self._slugs.get(path)
        params = {"state": "open", "head": f"{owner}:{head}", "base": base}
        with forge_errors("list pull requests"):
            data = await self._github.get(f"/repos/{owner}/{repo}/pulls", params)
        if not isinstance(data, list):
            raise ParseError("list pull requests: expected a JSON array")
        if not data:
            return None
        return _parse_pull(data[0])

    async def create_pr(
        self, path: str, head: str, base: str, title: str, body: str
    ) -> PullRequestRef:
        owner, repo = await self._slugs.get(path)
        payload = {"title": title, "head": head, "base": base, "body": body}
        with forge_errors("create pull request"):
            data = await self._github.post(f"/repos/{owner}/{repo}/pulls", payload)
        pr = _parse_pull(data)
        log.info("github.pr_created", repo=f"{owner}/{repo}", number=pr.number, url=pr.url)
        return pr

    async def update_pr(self, path: str, number: int, title: str, body: str) -> PullRequestRef:
        owner, repo = await self._slugs.get(path)
        with forge_errors("update pull request"):
            data = await self._github.patch(
                f"/repos/{owner}/{repo}/pulls/{number}", {"title": title, "body": body}
            )
        pr = _parse_pull(data)
        log.info("github.pr_updated", repo=f"{owner}/{repo}", number=pr.number, url=pr.url)
        return pr

    async def merge_pr(self, path: str, number: int) -> None:
        """Merge with a merge commit; the head branch is never deleted."""
        owner, repo = await self._slugs.get(path)
        with forge_errors("merge pull request"):
            data = await self._github.put(
                f"/repos/{owner}/{repo}/pulls/{number}/merge", {"merge_method": "merge"}
            )
        try:
            result = _MergePayload.model_validate(data)
        except ValidationError as exc:
            raise ParseError(f"unexpected merge response: {exc}") from exc
        if not result.merged:
            raise TransportError(f"merge refused: {result.message or 'unknown reason'}")
        log.info("github.pr_merged", repo=f"{owner}/{repo}", number=number)


def _parse_pull(data: Any) -> PullRequestRef:
    try:
        return _PullPayload.model_validate(data).to_ref()
    except ValidationError as exc:
        raise ParseError(f"unexpected pull request payload: {exc}") from exc


@contextlib.contextmanager
def forge_errors(action: str) -> Iterator[None]:
    """Translate httpx / rate-limit failures into the prfleet taxonomy."""
    try:
        yield
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code == 401:
            raise NotAuthenticatedError("GitHub rejected the token (401)") from exc
        raise TransportError(
            f"{action} failed: HTTP {exc.response.status_code} {_error_message(exc.response)}"
        ) from exc
    except RateLimitError as exc:
        raise TransportError(f"{action} failed: {exc}") from exc
    except httpx.HTTPError as exc:
        raise TransportError(f"{action} failed: {exc}") from exc
    except ValueError as exc:
        # response.json() on a non-JSON body
        raise ParseError(f"{action}: invalid JSON response") from exc


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        message = str(data.get("message", ""))
        errors = data.get("errors") or []
        details = "; ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict))
        return f"{message}: {details}" if details else message
    return ""
