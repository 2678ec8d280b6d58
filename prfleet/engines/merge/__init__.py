"""Merge engine."""

from prfleet.engines.merge.runner import MergeRunner

__all__ = ["MergeRunner"]
