"""Forge side: GitHub REST client, pull requests and Actions runs."""

from prfleet.forge.actions import ActionsBackend, ActionsClient
from prfleet.forge.github_client import GitHubClient, RateLimitError
from prfleet.forge.pulls import (
    PullRequestBackend,
    PullRequestClient,
    create_or_update,
    generate_pr_body,
    open_release_prs,
)
from prfleet.forge.remote import RepoSlugs, parse_repo_url

__all__ = [
    "ActionsBackend",
    "ActionsClient",
    "GitHubClient",
    "PullRequestBackend",
    "PullRequestClient",
    "RateLimitError",
    "RepoSlugs",
    "create_or_update",
    "generate_pr_body",
    "open_release_prs",
    "parse_repo_url",
]
