"""Repository discovery under the configured root directory."""

from __future__ import annotations

import asyncio
import glob
import os
from pathlib import Path

import structlog

from prfleet.git.repo import GitClient, is_git_repo
from prfleet.models import RepositoryRef

log = structlog.get_logger("prfleet.git")

_SKIP_DIRS = {"node_modules"}


async def find_repositories(
    git: GitClient,
    root: str | Path,
    frontend_glob: str,
    backend_glob: str,
) -> list[RepositoryRef]:
    """Enumerate repositories matching the frontend/backend globs under *root*.

    A matched repository that itself contains git repositories (a monorepo
    of services) is replaced by those nested repositories. The result is
    sorted by category, then top-level before nested (grouped by parent),
    then display name.
    """
    candidates: list[tuple[str, str, str | None]] = []  # (path, display, parent)
    for category, pattern in (("frontend", frontend_glob), ("backend", backend_glob)):
        if not pattern:
            continue
        for path in sorted(glob.glob(os.path.join(str(root), pattern))):
            if not os.path.isdir(path) or not is_git_repo(path):
                continue
            name = os.path.basename(path.rstrip(os.sep))
            nested = _nested_repositories(path)
            if nested:
                for child in nested:
                    child_name = os.path.basename(child)
                    candidates.append((child, f"{category}/{name}/{child_name}", name))
            else:
                candidates.append((path, f"{category}/{name}", None))

    main_branches = await asyncio.gather(
        *(git.detect_main_branch(path) for path, _, _ in candidates)
    )
    repos = [
        RepositoryRef(path=path, display_name=display, main_branch=main, parent=parent)
        for (path, display, parent), main in zip(candidates, main_branches, strict=True)
    ]
    repos.sort(key=_sort_key)
    log.debug("discovery.found", root=str(root), count=len(repos))
    return repos


async def current_repository(git: GitClient, cwd: str | Path | None = None) -> RepositoryRef:
    """Walk up from *cwd* to the enclosing git root.

    Raises ``FileNotFoundError`` outside a git repository.
    """
    path = Path(cwd or os.getcwd()).resolve()
    for candidate in (path, *path.parents):
        if is_git_repo(candidate):
            main = await git.detect_main_branch(str(candidate))
            return RepositoryRef(path=str(candidate), display_name=candidate.name, main_branch=main)
    raise FileNotFoundError(f"not a git repository: {path}")


def _nested_repositories(parent: str) -> list[str]:
    try:
        entries = sorted(os.scandir(parent), key=lambda e: e.name)
    except OSError:
        return []
    nested = []
    for entry in entries:
        if not entry.is_dir() or entry.name.startswith(".") or entry.name in _SKIP_DIRS:
            continue
        if is_git_repo(entry.path):
            nested.append(entry.path)
    return nested


def _sort_key(repo: RepositoryRef) -> tuple[str, int, str, str]:
    return (repo.category, 0 if repo.parent is None else 1, repo.parent or "", repo.display_name)
