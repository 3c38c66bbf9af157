from __future__ import annotations


class GaplyError(Exception):
    """Base class for planner errors."""


class ValidationError(GaplyError, ValueError):
    """A time, duration or preference value could not be parsed."""


class ProviderError(GaplyError, RuntimeError):
    """The calendar provider denied access, failed or timed out."""


class RemoteError(GaplyError, RuntimeError):
    """The remote persistence backend failed (network, auth, payload)."""


class StorageLimitExceeded(GaplyError, RuntimeError):
    def __init__(self, collection: str, current: int, limit: int) -> None:
        super().__init__(f"{collection} usage {current} exceeds hard ceiling {limit}")
        self.collection = collection
        self.current = current
        self.limit = limit
