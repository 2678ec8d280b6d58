"""GitHub remote URL parsing and the per-path owner/repo lookup."""

from __future__ import annotations

from prfleet.exceptions import TransportError
from prfleet.git.repo import GitClient


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """Extract (owner, repo) from a GitHub remote URL.

    Raises ValueError if the URL cannot be parsed.
    """
    result = _extract_owner_repo(repo_url)
    if result is None:
        raise ValueError(f"cannot parse GitHub repo URL: {repo_url!r}")
    owner, repo = result.split("/", 1)
    return owner, repo


def _extract_owner_repo(repo_url: str) -> str | None:
    """Extract 'owner/repo' from a GitHub URL.

    Handles:
      - https://github.com/owner/repo
      - https://github.com/owner/repo.git
      - git@github.com:owner/repo.git
      - ssh://git@github.com/owner/repo.git
    """
    repo_url = repo_url.strip().rstrip("/")
    if repo_url.endswith(".git"):
        repo_url = repo_url[:-4]

    # SCP-like SSH format: git@github.com:owner/repo
    if "://" not in repo_url and repo_url.startswith("git@"):
        colon_idx = repo_url.find(":")
        if colon_idx == -1:
            return None
        path = repo_url[colon_idx + 1 :]
        parts = path.split("/")
        if len(parts) == 2 and all(parts):
            return f"{parts[0]}/{parts[1]}"
        return None

    # local paths and file remotes have no owner
    if "://" not in repo_url or repo_url.startswith("file://"):
        return None

    parts = repo_url.split("/")
    if len(parts) >= 2 and parts[-2] and parts[-1] and ":" not in parts[-2]:
        return f"{parts[-2]}/{parts[-1]}"
    return None


class RepoSlugs:
    """(owner, repo) per local repository path, read from ``origin`` once."""

    def __init__(self, git: GitClient) -> None:
        self._git = git
        self._cache: dict[str, tuple[str, str]] = {}

    async def get(self, path: str) -> tuple[str, str]:
        if path not in self._cache:
            url = await self._git.remote_url(path)
            try:
                self._cache[path] = parse_repo_url(url)
            except ValueError as exc:
                raise TransportError(str(exc)) from exc
        return self._cache[path]
