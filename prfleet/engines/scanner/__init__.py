"""Scanner engine — concurrent multi-repository diff scan."""

from prfleet.engines.scanner.coordinator import ScanSession

__all__ = ["ScanSession"]
