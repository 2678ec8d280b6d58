"""Shared fixtures: in-memory git and forge collaborators."""

from __future__ import annotations

import asyncio
import os

import pytest

from prfleet.exceptions import NotAuthenticatedError, TransportError
from prfleet.models import EMPTY_DIFF, CommitRecord, DiffResult, PullRequestRef, RepositoryRef


def make_diff(*tickets_per_commit: tuple[str, ...]) -> DiffResult:
    commits = tuple(
        CommitRecord(short_hash=f"abc{i:04d}", summary=f"change {i}", tickets=tuple(t))
        for i, t in enumerate(tickets_per_commit)
    )
    tickets = sorted({t for c in commits for t in c.tickets})
    return DiffResult(commits=commits, tickets=tuple(tickets))


class FakeGit:
    """Per-path scripted fetch/diff behaviour; records calls and cancellations."""

    def __init__(self) -> None:
        self.diffs: dict[str, DiffResult] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.fetch_calls: list[tuple[str, list[str]]] = []
        self.cancelled: list[str] = []
        self.missing_branches: dict[str, set[str]] = {}
        self.dirty: set[str] = set()
        self.pull_counts: dict[str, int] = {}
        self.pull_errors: dict[str, Exception] = {}
        self.pulled: list[tuple[str, str]] = []

    async def fetch_branches(self, path, branches):
        self.fetch_calls.append((path, list(branches)))
        try:
            await asyncio.sleep(self.delays.get(path, 0))
        except asyncio.CancelledError:
            self.cancelled.append(path)
            raise
        if path in self.fetch_errors:
            raise self.fetch_errors[path]

    async def diff_branches(self, path, base, head, ticket_pattern=None):
        return self.diffs.get(path, EMPTY_DIFF)

    async def has_branch(self, path, name):
        return name not in self.missing_branches.get(path, set())

    async def is_dirty(self, path):
        return path in self.dirty

    async def checkout_and_pull(self, path, branch):
        if path in self.pull_errors:
            raise self.pull_errors[path]
        self.pulled.append((path, branch))
        return self.pull_counts.get(path, 0)


class FakePulls:
    """In-memory forge keyed by repository path."""

    def __init__(self) -> None:
        self.authenticated = True
        self.existing: dict[str, PullRequestRef] = {}
        self.find_errors: set[str] = set()
        self.merge_errors: set[str] = set()
        self.created: list[tuple[str, str, str, str, str]] = []
        self.updated: list[tuple[str, int, str, str]] = []
        self.merged: list[tuple[str, int]] = []

    async def check_auth(self):
        if not self.authenticated:
            raise NotAuthenticatedError()

    async def find_open_pr(self, path, head, base):
        if path in self.find_errors:
            raise TransportError("list pull requests failed: HTTP 502")
        return self.existing.get(path)

    async def create_pr(self, path, head, base, title, body):
        self.created.append((path, head, base, title, body))
        name = os.path.basename(path)
        return PullRequestRef(number=1, url=f"https://github.com/acme/{name}/pull/1", title=title)

    async def update_pr(self, path, number, title, body):
        self.updated.append((path, number, title, body))
        name = os.path.basename(path)
        return PullRequestRef(
            number=number, url=f"https://github.com/acme/{name}/pull/{number}", title=title
        )

    async def merge_pr(self, path, number):
        if path in self.merge_errors:
            raise TransportError("merge refused: Pull Request is not mergeable")
        self.merged.append((path, number))


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def fake_pulls():
    return FakePulls()


@pytest.fixture
def make_repos():
    def _make(*names: str) -> list[RepositoryRef]:
        return [RepositoryRef(path=f"/repos/{n}", display_name=n) for n in names]

    return _make


@pytest.fixture
def diff_factory():
    return make_diff
