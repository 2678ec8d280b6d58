"""Version-control side: commit graph, differ, git CLI wrapper, discovery."""

from prfleet.git.differ import all_tickets, diff_branches, extract_tickets, remote_ref
from prfleet.git.discovery import current_repository, find_repositories
from prfleet.git.graph import CommitGraph
from prfleet.git.repo import GitClient, is_git_repo

__all__ = [
    "CommitGraph",
    "GitClient",
    "all_tickets",
    "current_repository",
    "diff_branches",
    "extract_tickets",
    "find_repositories",
    "is_git_repo",
    "remote_ref",
]
