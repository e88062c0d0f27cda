"""Contract the route monitor and the API rely on, independent of the backend."""
import hashlib
from abc import ABC, abstractmethod


def token_digest(token):
    """API tokens are only ever stored as a SHA-256 digest."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


class StateStore(ABC):
    """
    Current route state per prefix, an append-only transition log, and the
    registry of dynamically added prefixes.

    Backends raise StoreUnavailable for any driver failure.
    """

    @abstractmethod
    def ping(self):
        """Raise StoreUnavailable unless the store is reachable."""

    @abstractmethod
    def get_current_route(self, prefix):
        """Return the RouteSnapshot for prefix, or None if it was never checked."""

    @abstractmethod
    def upsert_current_route(self, snapshot):
        """Replace the snapshot for snapshot.prefix (last writer wins)."""

    @abstractmethod
    def append_history(self, entry):
        """Append a RouteHistoryEntry. History rows are never updated or deleted."""

    @abstractmethod
    def get_history(self, prefix=None, limit=50):
        """Most recent history entries first, optionally for one prefix."""

    @abstractmethod
    def list_monitored_prefixes(self, active_only=True):
        """Registered prefixes as MonitoredPrefix records, ordered by prefix."""

    @abstractmethod
    def add_monitored_prefix(self, prefix, description, token_name, token):
        """Register (or re-activate) a prefix on behalf of an API token."""

    @abstractmethod
    def deactivate_prefix(self, prefix, token=None):
        """Soft-delete a registered prefix. Returns True if a row was deactivated."""

    @abstractmethod
    def get_prefixes_by_token(self, token):
        """Active prefixes registered with the given token."""

    def close(self):
        pass
