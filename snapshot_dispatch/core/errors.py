"""
Exception hierarchy for the snapshot dispatcher.

- AuthError: bad worker or gateway credentials, never retried
- TransportError: a worker connection closed or failed
- FetchError: the fetch capability failed for one key
- ValidationError: malformed request or message, rejected before queueing
- PersistenceError: a store operation failed, surfaced to the caller
"""


class SnapshotDispatchError(Exception):
    """Base class for all errors raised by this package."""


class AuthError(SnapshotDispatchError):
    """Credentials were missing or not on the allow-list."""


class TransportError(SnapshotDispatchError):
    """A connection to a peer closed or errored."""


class FetchError(SnapshotDispatchError):
    """A worker could not fetch the snapshot for a key."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key
        self.message = message


class ValidationError(SnapshotDispatchError):
    """A request or message is malformed or incomplete."""


class PersistenceError(SnapshotDispatchError):
    """The profile store failed to complete an operation."""


class ConfigurationError(SnapshotDispatchError):
    """Configuration could not be loaded or is invalid."""
