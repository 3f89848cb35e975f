"""
Failure taxonomy for the mirror pipeline.

Request-path errors (not found, limit exceeded, fetch failure) are always
turned into a playlist-format response at the boundary. Allocation
exhaustion only occurs while registering a playlist.
"""

from typing import Optional


class MirrorError(Exception):
    """Base class for every handled mirror failure."""


class PlaylistNotFound(MirrorError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"No playlist registered for identifier {identifier!r}")


class LimitExceeded(MirrorError):
    def __init__(self, identifier: str, max_devices: int, active_devices: int):
        self.identifier = identifier
        self.max_devices = max_devices
        self.active_devices = active_devices
        super().__init__(
            f"Device limit reached for {identifier}: {active_devices}/{max_devices} active")


class FetchFailure(MirrorError):
    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        self.detail = detail
        self.cause = cause
        super().__init__(detail)


class AllocationExhausted(MirrorError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Could not allocate a unique mirror identifier after {attempts} attempts")
