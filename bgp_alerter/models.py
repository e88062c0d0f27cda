"""Data model shared by the route monitor, the state stores and the API."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from ipaddress import IPv4Network, ip_network
from typing import List, Optional, Tuple

NOT_IN_TABLE_PATH = "Not in table"
API_ERROR_PATH = "API Error"
FIRST_CHECK_PATH = "N/A (First check)"


class RouteStatus(str, Enum):
    ACTIVE = 'active'
    NOT_IN_TABLE = 'not_in_table'
    ERROR = 'error'


class CheckOutcome(str, Enum):
    FIRST_SEEN = 'first_seen'
    CHANGED = 'changed'
    UNCHANGED = 'unchanged'
    SKIPPED = 'skipped'


class PrefixSource(str, Enum):
    CONFIG = 'config'
    REGISTERED = 'registered'


def utcnow():
    return datetime.now(timezone.utc)


def validate_prefix(text):
    """Returns the canonical form of an IPv4 CIDR prefix or raises ValueError."""
    network = ip_network(str(text).strip())
    if not isinstance(network, IPv4Network):
        raise ValueError(f"{text} is not an IPv4 prefix")
    return network.with_prefixlen


# --- Upstream path variants ---
@dataclass(frozen=True)
class Hops:
    """A path delivered as a list of hop identifiers."""
    hops: Tuple[str, ...]

    def render(self):
        return ' '.join(self.hops)


@dataclass(frozen=True)
class JoinedPath:
    """A path delivered as an already joined string."""
    text: str

    def render(self):
        return self.text


def path_from_upstream(raw):
    """Wraps a raw `path` value from the looking glass, or returns None if unusable."""
    if isinstance(raw, list):
        return Hops(tuple(str(hop) for hop in raw))
    if isinstance(raw, str):
        return JoinedPath(raw)
    return None


# --- Records ---
@dataclass
class RouteInfo:
    prefix: str
    status: RouteStatus
    path: str
    as_path: Optional[str] = None
    paths: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.status = RouteStatus(self.status)

    @classmethod
    def not_in_table(cls, prefix):
        return cls(prefix, RouteStatus.NOT_IN_TABLE, NOT_IN_TABLE_PATH)

    @classmethod
    def error(cls, prefix):
        return cls(prefix, RouteStatus.ERROR, API_ERROR_PATH)


@dataclass
class MonitoredPrefix:
    prefix: str
    description: str = ''
    source: PrefixSource = PrefixSource.CONFIG
    active: bool = True
    added_by: Optional[str] = None

    def to_dict(self):
        return {
            'prefix': self.prefix,
            'description': self.description,
            'source': self.source.value,
            'active': self.active,
            'added_by': self.added_by,
        }


@dataclass
class RouteSnapshot:
    """The latest known state of one prefix, replaced wholesale on every check."""
    prefix: str
    description: str
    path: str
    status: RouteStatus
    as_path: Optional[str] = None
    resolved_path: Optional[str] = None
    last_checked: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.status = RouteStatus(self.status)
        if self.status is RouteStatus.NOT_IN_TABLE:
            self.as_path = None

    @property
    def display_path(self):
        return self.resolved_path or self.path


@dataclass(frozen=True)
class RouteHistoryEntry:
    prefix: str
    description: str
    previous_path: str
    current_path: str
    status: RouteStatus
    as_path: Optional[str] = None
    resolved_path: Optional[str] = None
    detected_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, 'status', RouteStatus(self.status))


@dataclass
class RunSummary:
    prefixes_checked: int = 0
    changes_detected: int = 0
    errors: int = 0

    def to_dict(self):
        return {
            'prefixesChecked': self.prefixes_checked,
            'changesDetected': self.changes_detected,
            'errors': self.errors,
        }
