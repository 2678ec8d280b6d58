"""Actions monitor engine."""

from prfleet.engines.actions.monitor import ActionsMonitor, matches_filter, select_runs

__all__ = ["ActionsMonitor", "matches_filter", "select_runs"]
