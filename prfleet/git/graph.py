"""In-memory commit graph: the accessor the differ walks."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field

# git log record layout: <hash> US <parents> US <full message> RS
LOG_FORMAT = "%H%x1f%P%x1f%B%x1e"
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"


@dataclass
class CommitNode:
    commit_id: str
    parents: tuple[str, ...] = ()
    message: str = ""


@dataclass
class CommitGraph:
    """Snapshot of a repository's history restricted to a set of refs.

    *refs* maps ref names (``refs/remotes/origin/dev``) to commit ids; a ref
    that could not be resolved is simply absent.
    """

    commits: dict[str, CommitNode] = field(default_factory=dict)
    refs: dict[str, str] = field(default_factory=dict)

    def add(self, commit_id: str, parents: tuple[str, ...] = (), message: str = "") -> None:
        self.commits[commit_id] = CommitNode(commit_id, tuple(parents), message)

    def resolve(self, ref: str) -> str | None:
        commit_id = self.refs.get(ref)
        if commit_id is None or commit_id not in self.commits:
            return None
        return commit_id

    def message(self, commit_id: str) -> str:
        node = self.commits.get(commit_id)
        return node.message if node else ""

    def ancestors(self, commit_id: str) -> Iterator[str]:
        """Yield *commit_id* and every ancestor once, pre-order, all parents.

        First parents are explored before second parents. Parents that are
        missing from the snapshot (shallow history) are skipped.
        """
        seen: set[str] = set()
        stack = [commit_id]
        while stack:
            current = stack.pop()
            if current in seen or current not in self.commits:
                continue
            seen.add(current)
            yield current
            # reversed so the first parent is popped next
            stack.extend(reversed(self.commits[current].parents))

    @classmethod
    def from_log(cls, output: str, refs: dict[str, str]) -> CommitGraph:
        """Build a graph from ``git log --format=LOG_FORMAT`` output."""
        graph = cls(refs=dict(refs))
        for record in output.split(_RECORD_SEP):
            record = record.lstrip("\n")
            if not record:
                continue
            parts = record.split(_FIELD_SEP, 2)
            if len(parts) != 3:
                continue
            commit_id, parents, message = parts
            graph.add(commit_id.strip(), tuple(parents.split()), message.rstrip("\n"))
        return graph
