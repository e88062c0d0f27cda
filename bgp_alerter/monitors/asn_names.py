import logging
import re
import threading
import time

from ..exceptions import UpstreamUnavailable
from ..models import NOT_IN_TABLE_PATH
from .ripestat import get_json

logger = logging.getLogger(__name__)

AS_OVERVIEW_API_URL = "https://stat.ripe.net/data/as-overview/data.json"
ASN_TOKEN = re.compile(r'\b(\d+)\b')


def extract_asns(as_path):
    """Distinct ASNs of a path in order of first appearance."""
    seen = []
    for token in ASN_TOKEN.findall(as_path or ''):
        asn = int(token)
        if asn not in seen:
            seen.append(asn)
    return seen


class AsnNameCache:
    """ASN -> holder name (or the AS<n> fallback) for the lifetime of one run."""

    def __init__(self):
        self._names = {}
        self._lock = threading.Lock()

    def get(self, asn):
        with self._lock:
            return self._names.get(asn)

    def put(self, asn, name):
        with self._lock:
            self._names[asn] = name

    def __contains__(self, asn):
        with self._lock:
            return asn in self._names

    def __len__(self):
        with self._lock:
            return len(self._names)


class Throttle:
    """Enforces a minimum interval between calls across all threads sharing it."""

    def __init__(self, min_interval=0.1):
        self.min_interval = min_interval
        self._last_call = None
        self._lock = threading.Lock()

    def wait(self):
        # Sleeping under the lock serializes callers across threads
        with self._lock:
            if self._last_call is not None:
                remaining = self.min_interval - (time.monotonic() - self._last_call)
                if remaining > 0:
                    time.sleep(remaining)
            self._last_call = time.monotonic()


class AsnNameResolver:
    """Renders an AS path with holder names, e.g. `AS15169 (GOOGLE)`."""

    def __init__(self, cache=None, throttle=None, api_url=AS_OVERVIEW_API_URL, timeout=10):
        self.cache = cache if cache is not None else AsnNameCache()
        self.throttle = throttle if throttle is not None else Throttle()
        self.api_url = api_url
        self.timeout = timeout

    def lookup_holder(self, asn):
        """Returns the registered holder of asn, or None if it cannot be found."""
        resource = f"AS{asn}"
        try:
            payload = get_json(self.api_url, {'resource': resource}, self.timeout, resource)
        except UpstreamUnavailable as e:
            logger.warning(f"RIPEstat as-overview lookup failed for {e}")
            return None

        data = payload.get('data')
        holder = data.get('holder') if isinstance(data, dict) else None
        if not holder or not isinstance(holder, str):
            logger.info(f"No holder registered for {resource}")
            return None
        return holder

    def name_for(self, asn):
        name = self.cache.get(asn)
        if name is None:
            self.throttle.wait()
            # Failures are cached too so a broken ASN costs one call per run
            name = self.lookup_holder(asn) or f"AS{asn}"
            self.cache.put(asn, name)
        return name

    def resolve_names(self, as_path):
        """Replaces every ASN in as_path with `AS<n> (<name>)`, keeping separators."""
        if not as_path or as_path == NOT_IN_TABLE_PATH:
            return as_path

        names = {asn: self.name_for(asn) for asn in extract_asns(as_path)}
        if not names:
            return as_path

        def render(match):
            asn = int(match.group(1))
            return f"AS{asn} ({names[asn]})"

        return ASN_TOKEN.sub(render, as_path)
