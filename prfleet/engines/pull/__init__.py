"""Pull engine."""

from prfleet.engines.pull.runner import PULL_BRANCHES, PullRunner, target_branch

__all__ = ["PULL_BRANCHES", "PullRunner", "target_branch"]
