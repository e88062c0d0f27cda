"""
Route-state reconciliation.

One run loads the monitored prefixes (config-declared plus registered ones),
fetches the current best path of each, compares it with the stored snapshot,
and records and alerts on every transition. Upstream failures are contained
to the affected prefix; an unreachable store aborts the run.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace

from ..database import get_state_store
from ..models import (
    FIRST_CHECK_PATH, CheckOutcome, MonitoredPrefix, PrefixSource, RouteHistoryEntry,
    RouteSnapshot, RouteStatus, RunSummary, utcnow
)
from ..notifiers.telegram import TelegramNotifier
from .asn_names import AS_OVERVIEW_API_URL, AsnNameCache, AsnNameResolver, Throttle
from .ripestat import RouteLookupClient

logger = logging.getLogger(__name__)


def merge_prefixes(static, dynamic):
    """
    Union of two prefix -> description maps. Entries from `dynamic` (registered
    through the API) win over `static` (config) on conflicting descriptions.
    Static order is kept; new dynamic prefixes follow.
    """
    merged = dict(static)
    merged.update(dynamic)
    return merged


def load_monitored_prefixes(static_prefixes, store):
    """Config prefixes merged with the active registered prefixes from the store."""
    registered = {p.prefix: p for p in store.list_monitored_prefixes(active_only=True)}
    merged = merge_prefixes(static_prefixes or {}, {p.prefix: p.description for p in registered.values()})
    return [
        registered.get(prefix) or MonitoredPrefix(prefix, description or '', PrefixSource.CONFIG)
        for prefix, description in merged.items()
    ]


class Reconciler:
    """Compares live routing state with stored state and records transitions."""

    def __init__(self, store, route_client, notifier, static_prefixes=None, resource=None,
                 resolve_names=True, max_workers=1, asn_api_url=AS_OVERVIEW_API_URL,
                 asn_timeout=10, asn_delay=0.1):
        self.store = store
        self.route_client = route_client
        self.notifier = notifier
        self.static_prefixes = static_prefixes or {}
        self.resource = resource
        self.resolve_names = resolve_names
        self.max_workers = max_workers
        self.asn_api_url = asn_api_url
        self.asn_timeout = asn_timeout
        self.asn_delay = asn_delay

    def new_resolver(self):
        """A resolver with a fresh cache and throttle, shared by one run only."""
        return AsnNameResolver(
            cache=AsnNameCache(),
            throttle=Throttle(self.asn_delay),
            api_url=self.asn_api_url,
            timeout=self.asn_timeout,
        )

    def _record_transition(self, snapshot, previous_path, current_path):
        entry = RouteHistoryEntry(
            prefix=snapshot.prefix,
            description=snapshot.description,
            previous_path=previous_path,
            current_path=current_path,
            status=snapshot.status,
            as_path=snapshot.as_path,
            resolved_path=snapshot.resolved_path,
            detected_at=snapshot.last_checked,
        )
        self.store.append_history(entry)
        return entry

    def check_prefix(self, prefix, description='', resolver=None):
        """Reconciles one prefix and returns what happened to it."""
        if resolver is None and self.resolve_names:
            resolver = self.new_resolver()

        logger.info(f"Checking prefix: {prefix} ({description})")
        current = self.store.get_current_route(prefix)
        info = self.route_client.fetch_route(prefix, self.resource)

        if info.status is RouteStatus.ERROR:
            logger.warning(f"  Skipping {prefix}: failed to fetch route information from RIPEstat")
            return CheckOutcome.SKIPPED

        resolved_path = None
        if self.resolve_names and info.as_path and info.status is not RouteStatus.NOT_IN_TABLE:
            logger.debug(f"  Resolving ASN names for {info.as_path}")
            resolved_path = resolver.resolve_names(info.as_path)
        current_display = resolved_path or info.path

        snapshot = RouteSnapshot(
            prefix=prefix,
            description=description,
            path=info.path,
            status=info.status,
            as_path=info.as_path,
            resolved_path=resolved_path,
            last_checked=utcnow(),
        )

        if current is None:
            logger.info(f"  First time monitoring {prefix} - saving initial state")
            self.store.upsert_current_route(snapshot)
            self._record_transition(snapshot, FIRST_CHECK_PATH, current_display)
            self.notifier.notify(prefix, description, FIRST_CHECK_PATH, current_display, info.status)
            return CheckOutcome.FIRST_SEEN

        # Exact string comparison; upstream formatting drift counts as a change
        if current.path == info.path and current.status is info.status:
            self.store.upsert_current_route(replace(
                current,
                description=description or current.description,
                resolved_path=current.resolved_path or resolved_path,
                last_checked=snapshot.last_checked,
            ))
            logger.info(f"  No changes detected for {prefix}")
            return CheckOutcome.UNCHANGED

        previous_display = current.display_path
        if (self.resolve_names and current.as_path and not current.resolved_path
                and current.status is not RouteStatus.NOT_IN_TABLE):
            previous_display = resolver.resolve_names(current.as_path)

        logger.warning(f"  CHANGE DETECTED for {prefix}")
        logger.warning(f"    Previous: {previous_display} ({current.status.value})")
        logger.warning(f"    Current:  {current_display} ({info.status.value})")

        self._record_transition(snapshot, previous_display, current_display)
        self.store.upsert_current_route(snapshot)
        self.notifier.notify(prefix, description, previous_display, current_display, info.status)
        return CheckOutcome.CHANGED

    def _check_all(self, prefixes, resolver):
        if self.max_workers <= 1 or len(prefixes) <= 1:
            for p in prefixes:
                yield self.check_prefix(p.prefix, p.description, resolver)
            return

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='reconcile')
        try:
            futures = [executor.submit(self.check_prefix, p.prefix, p.description, resolver) for p in prefixes]
            for future in as_completed(futures):
                yield future.result()
        finally:
            # A failed store aborts the run; do not start the remaining prefixes
            executor.shutdown(wait=True, cancel_futures=True)

    def run(self):
        """One reconciliation pass over every monitored prefix."""
        self.store.ping()
        prefixes = load_monitored_prefixes(self.static_prefixes, self.store)
        if not prefixes:
            logger.warning("No prefixes configured for monitoring.")
            return RunSummary()

        logger.info(f"Starting BGP route monitoring of {len(prefixes)} prefix(es)")
        if not (self.notifier.enabled and self.notifier.configured):
            logger.info("Telegram alerts: DISABLED (web dashboard only)")

        summary = RunSummary(prefixes_checked=len(prefixes))
        resolver = self.new_resolver() if self.resolve_names else None
        for outcome in self._check_all(prefixes, resolver):
            if outcome in (CheckOutcome.FIRST_SEEN, CheckOutcome.CHANGED):
                summary.changes_detected += 1
            elif outcome is CheckOutcome.SKIPPED:
                summary.errors += 1

        logger.info(f"Monitoring complete. Changes detected: {summary.changes_detected}")
        return summary


def build_reconciler(config, store=None):
    """Wires a Reconciler from the loaded configuration."""
    ripe = config['ripe']
    monitoring = config['monitoring']
    return Reconciler(
        store=store if store is not None else get_state_store(config),
        route_client=RouteLookupClient(api_url=ripe['api_url'], timeout=ripe['timeout']),
        notifier=TelegramNotifier.from_config(config),
        static_prefixes=monitoring['prefixes'],
        resource=monitoring.get('resource'),
        resolve_names=monitoring.get('show_asn_names', True),
        max_workers=monitoring.get('max_workers', 1),
        asn_api_url=ripe['asn_api_url'],
        asn_timeout=ripe['asn_timeout'],
        asn_delay=ripe['asn_delay'],
    )
