"""Custom exceptions for prfleet."""


class PrFleetError(Exception):
    """Base exception for all prfleet errors."""


class RefNotFoundError(PrFleetError):
    """Raised when one or more branches are missing on the remote."""

    def __init__(self, branches: list[str]):
        self.branches = list(branches)
        super().__init__("Branch not found on remote: " + ", ".join(self.branches))


class TransportError(PrFleetError):
    """Raised when talking to the remote (git or forge) fails."""


class ParseError(PrFleetError):
    """Raised when a forge response cannot be parsed."""


class NotAuthenticatedError(PrFleetError):
    """Raised when no usable forge credentials are available."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message or "Not authenticated with GitHub. Set GITHUB_TOKEN or github.token first."
        )


class ConfigError(PrFleetError):
    """Raised when the configuration is invalid."""
