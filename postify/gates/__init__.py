"""Cross-cutting admission gates consulted before any mutating action."""

from postify.gates.rate_gate import RateGate, RateWindow
from postify.gates.resource_lock import Lock, ResourceLock

__all__ = [
    "Lock",
    "RateGate",
    "RateWindow",
    "ResourceLock",
]
