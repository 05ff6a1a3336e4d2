from __future__ import annotations


class WatchError(RuntimeError):
    """Base class for recoverable watch-cycle failures."""


class ScopeViolation(WatchError):
    """Raised when a target's location is outside the configured base scope."""


class ContainerNotFound(WatchError):
    """Raised when the container locator did not resolve within its budget."""


class ReloadTimeout(WatchError):
    """Raised when a reload did not signal completion within its bound."""


class MatchInvocationFailure(WatchError):
    """Raised when inspecting the live content itself failed."""
