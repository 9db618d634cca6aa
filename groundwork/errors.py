"""
Error taxonomy for Groundwork.

Planning errors (configuration, graph, state lock) abort a run before any
resource is touched. Provider errors are attributed to the single resource
that raised them and reported in aggregate at the end of an apply.
"""

from typing import Any, Dict, List, Optional


class GroundworkError(Exception):
    """Base class for all Groundwork errors."""
    pass


class ConfigError(GroundworkError):
    """Raised for malformed declarations or invalid input values."""
    pass


class StalePlanError(ConfigError):
    """Raised when a saved plan no longer matches the state it was made from."""
    pass


class CycleError(GroundworkError):
    """Raised when resource dependencies form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


class UnresolvedReferenceError(GroundworkError):
    """Raised when a reference points at a missing resource, output or variable."""

    def __init__(self, reference: str, source: Optional[str] = None, reason: str = ""):
        self.reference = reference
        self.source = source
        message = f"Unresolved reference '{reference}'"
        if source:
            message += f" in {source}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StateError(GroundworkError):
    """Base class for state store failures."""
    pass


class LockedStateError(StateError):
    """Raised when the state lock is already held by another invocation."""

    def __init__(self, lock_info: Dict[str, Any]):
        self.lock_info = lock_info
        super().__init__(
            f"State is locked (id={lock_info.get('id', '?')}, "
            f"operation={lock_info.get('operation', '?')}, "
            f"who={lock_info.get('who', '?')}, "
            f"created={lock_info.get('created', '?')})"
        )


class StateCorruptError(StateError):
    """Raised when the state document fails its checksum or cannot be parsed."""
    pass


class ProviderError(GroundworkError):
    """
    Raised by provider handlers for a failed operation on one resource.

    Attributes:
        retryable: Whether repeating the same call may succeed
        address: Resource address the error is attributed to (set by the executor)
    """

    def __init__(self, message: str, retryable: bool = False, address: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.address = address


class NotFoundError(ProviderError):
    """Raised by read/delete when the remote object does not exist."""
    pass


class ProviderTimeoutError(ProviderError):
    """Raised when a provider operation exceeds its time budget."""

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message, retryable=True, address=address)


class DependencyFailedError(ProviderError):
    """Recorded for resources skipped because a dependency failed."""

    def __init__(self, dependency: str, address: Optional[str] = None):
        self.dependency = dependency
        super().__init__(f"Dependency {dependency} failed", address=address)
