"""Async git CLI wrapper — the version-control collaborator.

All commands go through the ``git`` executable so SSH agents and credential
helpers configured for the user are inherited.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
from collections.abc import Iterable
from pathlib import Path

import structlog

from prfleet.exceptions import RefNotFoundError, TransportError
from prfleet.git import differ
from prfleet.git.graph import LOG_FORMAT, CommitGraph
from prfleet.models import DiffResult

log = structlog.get_logger("prfleet.git")

_MISSING_REF_RE = re.compile(r"couldn't find remote ref (?:refs/heads/)?(\S+)")
_MAIN_CANDIDATES = (
    ("refs/remotes/origin/main", "main"),
    ("refs/remotes/origin/master", "master"),
    ("refs/heads/main", "main"),
    ("refs/heads/master", "master"),
)


def is_git_repo(path: str | Path) -> bool:
    """True when *path* holds a ``.git`` directory (or worktree file)."""
    return (Path(path) / ".git").exists()


class GitClient:
    """Thin async wrapper around the git CLI, scoped per call to a repo path."""

    def __init__(self, executable: str = "git") -> None:
        self._executable = executable
        self._env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

    # ── remote ────────────────────────────────────────────────────────────

    async def fetch_branches(self, path: str, branches: Iterable[str]) -> None:
        """``git fetch origin <branches>``.

        Raises :class:`RefNotFoundError` when the remote lacks a branch and
        :class:`TransportError` for anything else.
        """
        branches = list(branches)
        code, stdout, stderr = await self._run(path, "fetch", "origin", *branches)
        if code == 0:
            return
        output = (stderr or stdout).strip()
        if "couldn't find remote ref" in output:
            missing = _MISSING_REF_RE.findall(output) or branches
            raise RefNotFoundError(missing)
        if output:
            raise TransportError(f"git fetch: {output}")
        raise TransportError("git fetch: Failed to fetch from remote (check network/auth)")

    async def remote_url(self, path: str, remote: str = "origin") -> str:
        code, stdout, stderr = await self._run(path, "remote", "get-url", remote)
        if code != 0:
            raise TransportError(f"git remote get-url: {stderr.strip() or 'no such remote'}")
        return stdout.strip()

    # ── refs & history ────────────────────────────────────────────────────

    async def resolve(self, path: str, ref: str) -> str | None:
        code, stdout, _ = await self._run(path, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if code != 0:
            return None
        return stdout.strip() or None

    async def has_branch(self, path: str, name: str) -> bool:
        """Check the remote-tracking ref first, then the local branch."""
        if await self.resolve(path, differ.remote_ref(name)) is not None:
            return True
        return await self.resolve(path, f"refs/heads/{name}") is not None

    async def detect_main_branch(self, path: str) -> str:
        """Return "main" or "master", preferring remote refs; "main" by default."""
        code, stdout, _ = await self._run(
            path, "for-each-ref", "--format=%(refname)", *(ref for ref, _ in _MAIN_CANDIDATES)
        )
        if code != 0:
            return "main"
        present = set(stdout.split())
        for ref, name in _MAIN_CANDIDATES:
            if ref in present:
                return name
        return "main"

    async def load_graph(self, path: str, refs: Iterable[str]) -> CommitGraph:
        """Snapshot the ancestry of *refs* into a :class:`CommitGraph`.

        Refs that do not resolve are left out of ``graph.refs``.
        """
        resolved: dict[str, str] = {}
        for ref in refs:
            commit_id = await self.resolve(path, ref)
            if commit_id is not None:
                resolved[ref] = commit_id
        if not resolved:
            return CommitGraph()

        code, stdout, stderr = await self._run(
            path, "log", f"--format={LOG_FORMAT}", *sorted(set(resolved.values())), "--"
        )
        if code != 0:
            raise TransportError(f"git log: {stderr.strip()}")
        return CommitGraph.from_log(stdout, resolved)

    async def diff_branches(
        self,
        path: str,
        base: str,
        head: str,
        ticket_pattern: re.Pattern[str] | None = None,
    ) -> DiffResult:
        """Load both remote-tracking refs and run the differ."""
        graph = await self.load_graph(path, [differ.remote_ref(base), differ.remote_ref(head)])
        return differ.diff_branches(graph, base, head, ticket_pattern)

    # ── working tree ──────────────────────────────────────────────────────

    async def is_dirty(self, path: str) -> bool:
        """True when tracked files have uncommitted changes (untracked files are ignored)."""
        code, stdout, stderr = await self._run(path, "status", "--porcelain", "--untracked-files=no")
        if code != 0:
            raise TransportError(f"git status: {stderr.strip() or 'failed'}")
        return bool(stdout.strip())

    async def checkout_and_pull(self, path: str, branch: str) -> int:
        """Check out *branch* and fast-forward it from origin.

        Returns the number of commits the branch moved by.
        """
        code, _, stderr = await self._run(path, "checkout", "--quiet", branch)
        if code != 0:
            raise TransportError(f"git checkout {branch}: {stderr.strip()}")
        before = await self.resolve(path, "HEAD")

        code, stdout, stderr = await self._run(path, "pull", "--ff-only", "--quiet", "origin", branch)
        if code != 0:
            raise TransportError(f"git pull: {(stderr or stdout).strip() or 'failed'}")
        if before is None:
            return 0

        code, stdout, stderr = await self._run(path, "rev-list", "--count", f"{before}..HEAD")
        if code != 0:
            raise TransportError(f"git rev-list: {stderr.strip()}")
        return int(stdout.strip() or 0)

    # ── internal ──────────────────────────────────────────────────────────

    async def _run(self, path: str, *args: str) -> tuple[int, str, str]:
        """Run ``git -C <path> <args>``; the child is killed if the task is cancelled."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable,
                "-C",
                path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except OSError as exc:
            raise TransportError(f"cannot run git: {exc}") from exc

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise

        log.debug("git.command", path=path, args=args[:2], returncode=proc.returncode)
        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
