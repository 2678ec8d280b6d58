"""Commit DAG differ — commits reachable from head but not from base.

Pure functions over a :class:`CommitGraph`; no I/O.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from prfleet.exceptions import RefNotFoundError
from prfleet.git.graph import CommitGraph
from prfleet.models import CommitRecord, DiffResult

REMOTE_PREFIX = "refs/remotes/origin/"
SHORT_HASH_LEN = 7


def remote_ref(branch: str) -> str:
    return REMOTE_PREFIX + branch


def extract_tickets(text: str, pattern: re.Pattern[str] | None) -> tuple[str, ...]:
    """Return the sorted, uppercased, de-duplicated tickets found in *text*.

    *pattern* is expected to carry the ticket in group 1 (see
    :func:`prfleet.core.config.compile_ticket_pattern`); a pattern without
    groups falls back to the whole match. ``None`` disables extraction.
    """
    if pattern is None:
        return ()
    found: set[str] = set()
    for match in pattern.finditer(text):
        ticket = match.group(1) if pattern.groups else match.group(0)
        if ticket:
            found.add(ticket.upper())
    return tuple(sorted(found))


def all_tickets(commits: Iterable[CommitRecord]) -> tuple[str, ...]:
    """Union of the tickets of *commits*, sorted."""
    found: set[str] = set()
    for commit in commits:
        found.update(commit.tickets)
    return tuple(sorted(found))


def diff_branches(
    graph: CommitGraph,
    base_branch: str,
    head_branch: str,
    ticket_pattern: re.Pattern[str] | None = None,
) -> DiffResult:
    """Compute ``base..head`` over the remote-tracking refs of *graph*.

    Raises :class:`RefNotFoundError` naming every branch whose remote ref
    does not resolve.
    """
    base_id = graph.resolve(remote_ref(base_branch))
    head_id = graph.resolve(remote_ref(head_branch))
    missing = [
        branch
        for branch, commit_id in ((base_branch, base_id), (head_branch, head_id))
        if commit_id is None
    ]
    if missing:
        raise RefNotFoundError(missing)

    return diff_commits(graph, base_id, head_id, ticket_pattern)  # type: ignore[arg-type]


def diff_commits(
    graph: CommitGraph,
    base_id: str,
    head_id: str,
    ticket_pattern: re.Pattern[str] | None = None,
) -> DiffResult:
    # Full base ancestry first, every parent of every merge included.
    base_reachable = set(graph.ancestors(base_id))

    commits: list[CommitRecord] = []
    seen: set[str] = set()
    # Keep walking past base-reachable commits: a merge may have one parent
    # already in base and another still carrying head-only work.
    for commit_id in graph.ancestors(head_id):
        if commit_id in seen or commit_id in base_reachable:
            continue
        seen.add(commit_id)
        message = graph.message(commit_id)
        commits.append(
            CommitRecord(
                short_hash=commit_id[:SHORT_HASH_LEN],
                summary=message.split("\n", 1)[0],
                tickets=extract_tickets(message, ticket_pattern),
            )
        )

    return DiffResult(commits=tuple(commits), tickets=all_tickets(commits))
