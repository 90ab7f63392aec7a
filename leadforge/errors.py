"""
Exceptions raised across the lead pipeline.

Per-item loops (grid cells, candidate places, queued sends) catch
LeadforgeError and record the message instead of aborting the run.
"""

from typing import Optional


class LeadforgeError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(LeadforgeError):
    """Required credentials or settings are missing."""


class ValidationError(LeadforgeError):
    """Operation parameters were rejected before any side effect."""


class ProviderError(LeadforgeError):
    """The places provider returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, 429s and 5xx responses that outlived the retry loop."""


class CapExceededError(LeadforgeError):
    """A usage cap for one resource is exhausted."""

    def __init__(self, resource: str, scope: str, limit: int, used: int):
        super().__init__(f"{scope} {resource} cap reached ({used}/{limit})")
        self.resource = resource
        self.scope = scope
        self.limit = limit
        self.used = used


class PersistencePartialFailure(LeadforgeError):
    """A unique key was taken by a concurrent writer between check and insert."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key
