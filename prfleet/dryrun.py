"""Dry-run collaborators: synthetic git and forge with realistic delays.

Results are derived from a stable hash of the repository name so repeated
runs show the same picture:

* one repository in three has nothing to release, the rest carry two
  commits referencing tickets;
* half of the repositories already have an open release PR;
* pull mode: one repository in three lacks the branch, the others are
  either up to date or move by a few commits;
* Actions runs: four fixed shapes, one of them entirely outside the
  monitor window.

Nothing is fetched, pulled, created or merged.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from prfleet.git.graph import CommitGraph
from prfleet.git.repo import GitClient
from prfleet.models import PullRequestRef, WorkflowRun

DRY_RUN_PR_NUMBER = 123


def _repo_name(path: str) -> str:
    return os.path.basename(os.path.normpath(path))


def _bucket(name: str) -> int:
    return int.from_bytes(hashlib.sha256(name.encode()).digest()[:4], "big")


def _fake_id(name: str, label: str) -> str:
    return hashlib.sha1(f"{name}:{label}".encode()).hexdigest()


def dry_run_url(path: str) -> str:
    return f"https://github.com/example/{_repo_name(path)}/pull/{DRY_RUN_PR_NUMBER} (DRY RUN)"


class DryRunGitClient(GitClient):
    """:class:`GitClient` over a synthetic history; the real differ still runs."""

    def __init__(self, delay_scale: float = 1.0) -> None:
        super().__init__()
        self._delay_scale = delay_scale

    async def _pause(self, seconds: float) -> None:
        await asyncio.sleep(seconds * self._delay_scale)

    async def fetch_branches(self, path: str, branches: Iterable[str]) -> None:
        # spread fetch times so results stream in out of order
        await self._pause(0.2 + (_bucket(_repo_name(path)) % 10) / 10)

    async def remote_url(self, path: str, remote: str = "origin") -> str:
        return f"https://github.com/example/{_repo_name(path)}.git"

    async def resolve(self, path: str, ref: str) -> str | None:
        return _fake_id(_repo_name(path), "base")

    async def has_branch(self, path: str, name: str) -> bool:
        # one repository in three lacks the branch it is asked to pull
        return _bucket(f"{_repo_name(path)}:pull") % 3 != 2

    async def detect_main_branch(self, path: str) -> str:
        return "main"

    async def load_graph(self, path: str, refs: Iterable[str]) -> CommitGraph:
        """First ref is the base and sits on the root; the others point at the tip."""
        await self._pause(0.1)
        refs = list(refs)
        name = _repo_name(path)
        bucket = _bucket(name)

        graph = CommitGraph()
        root = _fake_id(name, "base")
        graph.add(root, (), "Initial commit")
        tip = root
        if bucket % 3 != 0:
            ticket = 100 + bucket % 900
            first = _fake_id(name, "1")
            second = _fake_id(name, "2")
            graph.add(first, (root,), f"Add dry-run feature\n\nRefs ATT-{ticket}")
            graph.add(second, (first,), f"Fix dry-run edge case (ATT-{ticket + 1})")
            tip = second

        for ref in refs[:1]:
            graph.refs[ref] = root
        for ref in refs[1:]:
            graph.refs[ref] = tip
        return graph

    async def is_dirty(self, path: str) -> bool:
        return False

    async def checkout_and_pull(self, path: str, branch: str) -> int:
        await self._pause(0.2)
        bucket = _bucket(f"{_repo_name(path)}:pull")
        return bucket % 5 + 1 if bucket % 3 == 0 else 0


class DryRunPullRequestClient:
    """Forge stand-in implementing :class:`~prfleet.forge.pulls.PullRequestBackend`."""

    def __init__(self, delay_scale: float = 1.0) -> None:
        self._delay_scale = delay_scale

    async def _pause(self, seconds: float) -> None:
        await asyncio.sleep(seconds * self._delay_scale)

    async def check_auth(self) -> None:
        await self._pause(0.1)

    async def find_open_pr(self, path: str, head: str, base: str) -> PullRequestRef | None:
        await self._pause(0.3)
        name = _repo_name(path)
        if _bucket(name) % 2 != 0:
            return None
        return PullRequestRef(
            number=DRY_RUN_PR_NUMBER,
            url=f"https://github.com/example/{name}/pull/{DRY_RUN_PR_NUMBER}",
            title=f"{head} → {base}",
        )

    async def create_pr(
        self, path: str, head: str, base: str, title: str, body: str
    ) -> PullRequestRef:
        await self._pause(0.5)
        return PullRequestRef(number=DRY_RUN_PR_NUMBER, url=dry_run_url(path), title=title)

    async def update_pr(self, path: str, number: int, title: str, body: str) -> PullRequestRef:
        await self._pause(0.5)
        return PullRequestRef(number=number, url=dry_run_url(path), title=title)

    async def merge_pr(self, path: str, number: int) -> None:
        await self._pause(0.5)


class DryRunActionsClient:
    """Actions stand-in implementing :class:`~prfleet.forge.actions.ActionsBackend`.

    Runs are placed relative to the current time so the monitor's window
    applies to them like to real ones.
    """

    def __init__(self, delay_scale: float = 1.0) -> None:
        self._delay_scale = delay_scale

    async def list_workflow_runs(self, path: str, limit: int = 10) -> list[WorkflowRun]:
        await asyncio.sleep(0.3 * self._delay_scale)
        name = _repo_name(path)
        bucket = _bucket(f"{name}:actions")
        now = datetime.now(timezone.utc)
        base_id = 1000 + bucket % 9000 * 10

        def run(
            offset: int,
            workflow: str,
            title: str,
            status: str,
            conclusion: str,
            branch: str,
            minutes_ago: float,
        ) -> WorkflowRun:
            run_id = base_id + offset
            updated = now - timedelta(minutes=minutes_ago)
            return WorkflowRun(
                run_id=run_id,
                display_title=title,
                workflow_name=workflow,
                status=status,
                conclusion=conclusion,
                head_branch=branch,
                event="push",
                url=f"https://github.com/example/{name}/actions/runs/{run_id}",
                created_at=updated - timedelta(minutes=3),
                updated_at=updated,
            )

        match bucket % 4:
            case 0:
                runs = [
                    run(2, "CI", "feat: Add dashboard", "in_progress", "", "dev", 1),
                    run(1, "CI", "fix: Auth bug", "completed", "success", "staging", 30),
                    run(0, "CI", "chore: Bump deps", "completed", "success", "dev", 120),
                ]
            case 1:
                runs = [run(0, "CI", "chore: Update deps", "completed", "failure", "dev", 10)]
            case 2:
                runs = [
                    run(1, "Deploy", "Deploy staging", "queued", "", "staging", 1),
                    run(0, "CI", "fix: DB migration", "completed", "success", "main", 60),
                ]
            case _:
                # outside the monitor window
                runs = [
                    run(0, "CI", "refactor: Queue handler", "completed", "cancelled", "dev", 3 * 24 * 60)
                ]
        return runs[:limit]
