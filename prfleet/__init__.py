"""prfleet: release pull requests across a fleet of git repositories."""

__version__ = "0.1.0"
