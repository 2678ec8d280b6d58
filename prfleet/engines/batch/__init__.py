"""Batch engine — release PRs for a selection of the fleet."""

from prfleet.engines.batch.pipeline import (
    BatchPipeline,
    BatchRun,
    BatchState,
    ExistingPrSummary,
    SelectionSet,
)

__all__ = [
    "BatchPipeline",
    "BatchRun",
    "BatchState",
    "ExistingPrSummary",
    "SelectionSet",
]
