"""Single-repository engine."""

from prfleet.engines.single.runner import SinglePreview, SingleRepoRunner

__all__ = ["SinglePreview", "SingleRepoRunner"]
