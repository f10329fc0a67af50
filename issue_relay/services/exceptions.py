"""Errors raised while relaying webhook events."""

from typing import Optional


class SyncError(Exception):
    """Base class for failures that abort the handling of one webhook."""


class MappingNotFound(SyncError):
    """No mapping row matches the requested identity."""


class DuplicateMapping(SyncError):
    """A mapping for this identity already exists and was left untouched."""


class InstallationNotFound(SyncError):
    """The synchronizing app has no usable installation on the organization."""

    def __init__(self, org: str):
        super().__init__(f"No installation found for organization '{org}'")
        self.org = org


class RemoteAPIError(SyncError):
    """GitHub rejected or failed a call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(SyncError):
    """A write to the mapping database failed."""


class MalformedEvent(ValueError):
    """The webhook body could not be parsed."""


class UnsupportedEvent(ValueError):
    """The webhook event type or action is not one the relay handles."""
