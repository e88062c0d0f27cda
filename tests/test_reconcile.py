from datetime import datetime, timedelta, timezone

import pytest
import requests

from bgp_alerter.exceptions import StoreUnavailable
from bgp_alerter.models import (
    FIRST_CHECK_PATH, CheckOutcome, PrefixSource, RouteInfo, RouteSnapshot,
    RouteStatus
)
from bgp_alerter.monitors.reconcile import (
    Reconciler, build_reconciler, load_monitored_prefixes, merge_prefixes
)
from bgp_alerter.monitors.ripestat import RouteLookupClient
from bgp_alerter.notifiers.telegram import TelegramNotifier

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def active(prefix, path):
    return RouteInfo(prefix, RouteStatus.ACTIVE, path, as_path=path, paths=[path])


@pytest.fixture
def route_client(mocker):
    client = mocker.Mock()
    client.fetch_route.return_value = active('8.8.8.0/24', '15169 3356')
    return client


def make_reconciler(store, route_client, notifier, prefixes=None, **kwargs):
    kwargs.setdefault('resolve_names', False)
    return Reconciler(
        store=store,
        route_client=route_client,
        notifier=notifier,
        static_prefixes={'8.8.8.0/24': 'Google DNS'} if prefixes is None else prefixes,
        asn_delay=0,
        **kwargs
    )


# --- Prefix sources ---
def test_merge_prefixes_dynamic_wins():
    """Test that registered descriptions override config ones and nothing is lost."""
    merged = merge_prefixes(
        {'8.8.8.0/24': 'Google (config)', '1.1.1.0/24': 'Cloudflare'},
        {'8.8.8.0/24': 'Google (api)', '192.0.2.0/24': 'Lab'},
    )

    assert merged == {'8.8.8.0/24': 'Google (api)', '1.1.1.0/24': 'Cloudflare', '192.0.2.0/24': 'Lab'}
    assert list(merged) == ['8.8.8.0/24', '1.1.1.0/24', '192.0.2.0/24']


def test_merge_prefixes_empty():
    assert merge_prefixes({}, {}) == {}


def test_load_monitored_prefixes_marks_sources(store):
    """Test that config and registered prefixes are merged with their origin."""
    store.add_monitored_prefix('8.8.8.0/24', 'Google (api)', 'Alice', 'token-alice')
    store.add_monitored_prefix('192.0.2.0/24', 'Lab', 'Alice', 'token-alice')
    store.add_monitored_prefix('198.51.100.0/24', 'Old', 'Alice', 'token-alice')
    store.deactivate_prefix('198.51.100.0/24')

    prefixes = load_monitored_prefixes({'8.8.8.0/24': 'Google', '1.1.1.0/24': 'Cloudflare'}, store)

    assert [(p.prefix, p.description, p.source) for p in prefixes] == [
        ('8.8.8.0/24', 'Google (api)', PrefixSource.REGISTERED),
        ('1.1.1.0/24', 'Cloudflare', PrefixSource.CONFIG),
        ('192.0.2.0/24', 'Lab', PrefixSource.REGISTERED),
    ]


# --- Per-prefix state machine ---
def test_first_seen_records_history_and_alerts(store, route_client, notifier):
    """Test that the first observation writes a snapshot, one history row and an alert."""
    outcome = make_reconciler(store, route_client, notifier).check_prefix('8.8.8.0/24', 'Google DNS')

    assert outcome is CheckOutcome.FIRST_SEEN
    snapshot = store.get_current_route('8.8.8.0/24')
    assert snapshot.status is RouteStatus.ACTIVE
    assert snapshot.path == '15169 3356'

    history = store.get_history()
    assert len(history) == 1
    assert history[0].previous_path == FIRST_CHECK_PATH
    assert history[0].current_path == '15169 3356'
    notifier.notify.assert_called_once_with(
        '8.8.8.0/24', 'Google DNS', FIRST_CHECK_PATH, '15169 3356', RouteStatus.ACTIVE
    )


def test_unchanged_run_only_touches_last_checked(mocker, store, route_client, notifier):
    """Test that an identical upstream answer creates no history and only refreshes last_checked."""
    mocker.patch('bgp_alerter.monitors.reconcile.utcnow', side_effect=[T0, T0 + timedelta(minutes=5)])
    reconciler = make_reconciler(store, route_client, notifier)

    first = reconciler.run()
    before = store.get_current_route('8.8.8.0/24')
    second = reconciler.run()
    after = store.get_current_route('8.8.8.0/24')

    assert first.changes_detected == 1
    assert second.changes_detected == 0
    assert second.prefixes_checked == 1
    assert len(store.get_history()) == 1
    assert (after.path, after.status, after.as_path) == (before.path, before.status, before.as_path)
    assert before.last_checked == T0
    assert after.last_checked == T0 + timedelta(minutes=5)
    assert notifier.notify.call_count == 1


def test_status_change_alone_is_a_change(store, route_client, notifier):
    """Test that a differing status counts even when the path string is identical."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', 'Google DNS', 'Not in table', RouteStatus.ACTIVE))
    route_client.fetch_route.return_value = RouteInfo.not_in_table('8.8.8.0/24')

    outcome = make_reconciler(store, route_client, notifier).check_prefix('8.8.8.0/24', 'Google DNS')

    assert outcome is CheckOutcome.CHANGED


def test_path_comparison_is_exact(store, route_client, notifier):
    """Test that whitespace drift in the upstream path is reported as a change."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', '', '15169 3356', RouteStatus.ACTIVE, as_path='15169 3356'))
    route_client.fetch_route.return_value = active('8.8.8.0/24', '15169  3356')

    outcome = make_reconciler(store, route_client, notifier).check_prefix('8.8.8.0/24')

    assert outcome is CheckOutcome.CHANGED


def test_withdrawal_after_active(store, route_client, notifier):
    """Test that an empty bgp_state after an active route is recorded as not_in_table."""
    reconciler = make_reconciler(store, route_client, notifier)
    reconciler.check_prefix('8.8.8.0/24', 'Google DNS')
    route_client.fetch_route.return_value = RouteInfo.not_in_table('8.8.8.0/24')

    outcome = reconciler.check_prefix('8.8.8.0/24', 'Google DNS')

    assert outcome is CheckOutcome.CHANGED
    snapshot = store.get_current_route('8.8.8.0/24')
    assert snapshot.status is RouteStatus.NOT_IN_TABLE
    assert snapshot.path == 'Not in table'
    assert snapshot.as_path is None
    latest = store.get_history(limit=1)[0]
    assert latest.status is RouteStatus.NOT_IN_TABLE
    assert latest.previous_path == '15169 3356'
    assert notifier.notify.call_args.args[4] is RouteStatus.NOT_IN_TABLE


def test_upstream_error_leaves_state_untouched(store, route_client, notifier):
    """Test that an error result performs no write and no alert."""
    existing = RouteSnapshot('8.8.8.0/24', 'Google DNS', '15169 3356', RouteStatus.ACTIVE,
                             as_path='15169 3356', last_checked=T0)
    store.upsert_current_route(existing)
    route_client.fetch_route.return_value = RouteInfo.error('8.8.8.0/24')

    outcome = make_reconciler(store, route_client, notifier).check_prefix('8.8.8.0/24', 'Google DNS')

    assert outcome is CheckOutcome.SKIPPED
    assert store.get_current_route('8.8.8.0/24') == existing
    assert store.get_history() == []
    notifier.notify.assert_not_called()


def test_error_for_one_prefix_does_not_stop_the_run(store, route_client, notifier):
    """Test that a failing prefix is skipped while the next one is processed."""
    existing = RouteSnapshot('192.0.2.0/24', 'A', '64500 64501', RouteStatus.ACTIVE,
                             as_path='64500 64501', last_checked=T0)
    store.upsert_current_route(existing)
    route_client.fetch_route.side_effect = lambda prefix, resource=None: (
        RouteInfo.error(prefix) if prefix == '192.0.2.0/24' else active(prefix, '15169')
    )
    reconciler = make_reconciler(store, route_client, notifier,
                                 prefixes={'192.0.2.0/24': 'A', '8.8.8.0/24': 'B'})

    summary = reconciler.run()

    assert summary.prefixes_checked == 2
    assert summary.changes_detected == 1
    assert summary.errors == 1
    assert store.get_current_route('192.0.2.0/24') == existing
    assert store.get_current_route('8.8.8.0/24').path == '15169'


def test_resource_filter_is_passed_to_lookup(store, route_client, notifier):
    """Test that the configured resource is used for every lookup."""
    make_reconciler(store, route_client, notifier, resource='AS15169').run()

    route_client.fetch_route.assert_called_once_with('8.8.8.0/24', 'AS15169')


def test_unchanged_refreshes_description(store, route_client, notifier):
    """Test that a new description reaches the snapshot without counting as a change."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', 'Old name', '15169 3356', RouteStatus.ACTIVE,
                                             as_path='15169 3356', last_checked=T0))

    outcome = make_reconciler(store, route_client, notifier).check_prefix('8.8.8.0/24', 'Google DNS')

    assert outcome is CheckOutcome.UNCHANGED
    snapshot = store.get_current_route('8.8.8.0/24')
    assert snapshot.description == 'Google DNS'
    assert (snapshot.path, snapshot.as_path) == ('15169 3356', '15169 3356')
    assert store.get_history() == []


# --- Alert delivery failures ---
def test_failed_alert_keeps_first_seen_state(store, route_client, notifier):
    """Test that an undelivered alert does not undo the first snapshot."""
    notifier.notify.return_value = False

    summary = make_reconciler(store, route_client, notifier).run()

    assert summary.changes_detected == 1
    assert store.get_current_route('8.8.8.0/24').path == '15169 3356'
    assert len(store.get_history()) == 1
    notifier.notify.assert_called_once()


def test_failed_alert_keeps_changed_state(store, route_client, notifier):
    """Test that an undelivered alert does not undo a recorded transition."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', 'Google DNS', '15169 6939', RouteStatus.ACTIVE,
                                             as_path='15169 6939', last_checked=T0))
    notifier.notify.return_value = False

    summary = make_reconciler(store, route_client, notifier).run()

    assert summary.changes_detected == 1
    assert store.get_current_route('8.8.8.0/24').path == '15169 3356'
    history = store.get_history()
    assert len(history) == 1
    assert history[0].previous_path == '15169 6939'


# --- Name resolution ---
def test_unchanged_fills_missing_resolved_path(mocker, store, route_client, notifier):
    """Test that a snapshot stored without names picks them up on an unchanged check."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', 'Google DNS', '15169 3356', RouteStatus.ACTIVE,
                                             as_path='15169 3356', last_checked=T0))
    resolver = mocker.Mock()
    resolver.resolve_names.return_value = 'AS15169 (GOOGLE) AS3356 (LEVEL3)'

    outcome = make_reconciler(store, route_client, notifier, resolve_names=True).check_prefix(
        '8.8.8.0/24', 'Google DNS', resolver=resolver
    )

    assert outcome is CheckOutcome.UNCHANGED
    snapshot = store.get_current_route('8.8.8.0/24')
    assert snapshot.resolved_path == 'AS15169 (GOOGLE) AS3356 (LEVEL3)'
    assert (snapshot.path, snapshot.as_path, snapshot.status) == ('15169 3356', '15169 3356', RouteStatus.ACTIVE)
    assert store.get_history() == []
    notifier.notify.assert_not_called()


def test_unchanged_keeps_stored_resolved_path(mocker, store, route_client, notifier):
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', 'Google DNS', '15169 3356', RouteStatus.ACTIVE,
                                             as_path='15169 3356', resolved_path='stored names'))
    resolver = mocker.Mock()
    resolver.resolve_names.return_value = 'fresh names'

    make_reconciler(store, route_client, notifier, resolve_names=True).check_prefix(
        '8.8.8.0/24', 'Google DNS', resolver=resolver
    )

    assert store.get_current_route('8.8.8.0/24').resolved_path == 'stored names'

def test_names_resolved_for_new_and_old_path(mocker, store, route_client, notifier):
    """Test that a transition renders both sides with holder names when the old side never was."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', 'Google DNS', '15169 3356', RouteStatus.ACTIVE,
                                             as_path='15169 3356'))
    route_client.fetch_route.return_value = active('8.8.8.0/24', '15169 6939')
    resolver = mocker.Mock()
    resolver.resolve_names.side_effect = lambda path: f'<{path}>'

    reconciler = make_reconciler(store, route_client, notifier, resolve_names=True)
    outcome = reconciler.check_prefix('8.8.8.0/24', 'Google DNS', resolver=resolver)

    assert outcome is CheckOutcome.CHANGED
    entry = store.get_history()[0]
    assert entry.previous_path == '<15169 3356>'
    assert entry.current_path == '<15169 6939>'
    assert entry.resolved_path == '<15169 6939>'
    snapshot = store.get_current_route('8.8.8.0/24')
    assert snapshot.path == '15169 6939'
    assert snapshot.resolved_path == '<15169 6939>'


def test_previous_resolved_path_is_reused(mocker, store, route_client, notifier):
    """Test that an already resolved old path is not looked up again."""
    store.upsert_current_route(RouteSnapshot('8.8.8.0/24', '', '15169 3356', RouteStatus.ACTIVE,
                                             as_path='15169 3356', resolved_path='stored names'))
    route_client.fetch_route.return_value = active('8.8.8.0/24', '15169 6939')
    resolver = mocker.Mock()
    resolver.resolve_names.return_value = 'new names'

    make_reconciler(store, route_client, notifier, resolve_names=True).check_prefix('8.8.8.0/24', resolver=resolver)

    resolver.resolve_names.assert_called_once_with('15169 6939')
    assert store.get_history()[0].previous_path == 'stored names'


def test_withdrawn_route_is_not_resolved(mocker, store, route_client, notifier):
    """Test that no names are looked up for a not_in_table result."""
    route_client.fetch_route.return_value = RouteInfo.not_in_table('8.8.8.0/24')
    resolver = mocker.Mock()

    make_reconciler(store, route_client, notifier, resolve_names=True).check_prefix('8.8.8.0/24', resolver=resolver)

    resolver.resolve_names.assert_not_called()
    assert store.get_current_route('8.8.8.0/24').resolved_path is None


def test_run_shares_one_resolver(mocker, store, route_client, notifier):
    """Test that all prefixes of a run share the same name cache."""
    spy = mocker.spy(Reconciler, 'check_prefix')
    reconciler = make_reconciler(store, route_client, notifier, resolve_names=True,
                                 prefixes={'8.8.8.0/24': '', '8.8.4.0/24': ''})
    mocker.patch.object(reconciler, 'new_resolver', return_value=mocker.Mock(resolve_names=lambda p: p))

    reconciler.run()

    resolvers = {id(c.args[3]) for c in spy.call_args_list}
    assert len(resolvers) == 1


# --- Run level ---
def test_empty_prefix_set_makes_no_calls(store, route_client, notifier):
    """Test that a run without prefixes reports zero and never calls upstream."""
    summary = make_reconciler(store, route_client, notifier, prefixes={}).run()

    assert summary.prefixes_checked == 0
    assert summary.changes_detected == 0
    route_client.fetch_route.assert_not_called()


def test_unreachable_store_aborts_before_any_lookup(mocker, route_client, notifier):
    """Test that StoreUnavailable stops the run before touching the network."""
    broken = mocker.Mock()
    broken.ping.side_effect = StoreUnavailable('database is locked')

    with pytest.raises(StoreUnavailable):
        make_reconciler(broken, route_client, notifier).run()
    route_client.fetch_route.assert_not_called()


def test_store_failure_mid_run_propagates(mocker, route_client, notifier):
    """Test that a write failure aborts the run instead of being skipped."""
    broken = mocker.Mock()
    broken.list_monitored_prefixes.return_value = []
    broken.get_current_route.return_value = None
    broken.upsert_current_route.side_effect = StoreUnavailable('disk I/O error')

    with pytest.raises(StoreUnavailable):
        make_reconciler(broken, route_client, notifier).run()
    notifier.notify.assert_not_called()


def test_parallel_run_checks_every_prefix(store, route_client, notifier):
    """Test that the thread pool variant reaches the same result."""
    route_client.fetch_route.side_effect = lambda prefix, resource=None: active(prefix, '64500')
    prefixes = {f'192.0.{i}.0/24': f'net {i}' for i in range(6)}

    summary = make_reconciler(store, route_client, notifier, prefixes=prefixes, max_workers=3).run()

    assert summary.prefixes_checked == 6
    assert summary.changes_detected == 6
    for prefix in prefixes:
        assert store.get_current_route(prefix).path == '64500'
    assert len(store.get_history()) == 6


def test_parallel_runs_do_not_accumulate_connections(store, route_client, notifier):
    """Test that repeated thread pool runs keep the number of open connections bounded."""
    route_client.fetch_route.side_effect = lambda prefix, resource=None: active(prefix, '64500')
    prefixes = {f'192.0.{i}.0/24': f'net {i}' for i in range(8)}
    reconciler = make_reconciler(store, route_client, notifier, prefixes=prefixes, max_workers=4)

    counts = []
    for _ in range(5):
        reconciler.run()
        counts.append(store.open_connections)

    # the calling thread plus at most one connection per worker of the last run
    assert max(counts) <= 1 + 4


def test_build_reconciler_from_config(config, store):
    """Test that configuration is wired into the collaborators."""
    config['monitoring']['resource'] = 'AS15169'
    config['monitoring']['show_asn_names'] = False

    reconciler = build_reconciler(config, store)

    assert reconciler.store is store
    assert isinstance(reconciler.route_client, RouteLookupClient)
    assert isinstance(reconciler.notifier, TelegramNotifier)
    assert reconciler.static_prefixes == {'8.8.8.0/24': 'Google DNS'}
    assert reconciler.resource == 'AS15169'
    assert reconciler.resolve_names is False


# --- End to end against fake upstreams ---
class FakeRipe:
    """Serves bgp-state and as-overview responses for requests.get."""

    def __init__(self, mocker, make_response):
        self.make_response = make_response
        self.bgp_state = []
        self.holders = {'AS15169': 'GOOGLE', 'AS3356': 'LEVEL3', 'AS6939': 'HURRICANE'}
        self.unreachable = set()
        self.get = mocker.patch('requests.get', side_effect=self.respond)

    def respond(self, url, params=None, headers=None, timeout=None):
        if 'as-overview' in url:
            if params['resource'] in self.unreachable:
                raise requests.exceptions.ConnectionError('as-overview unreachable')
            return self.make_response({'data': {'holder': self.holders[params['resource']]}})
        return self.make_response({'data': {'bgp_state': [{'path': p} for p in self.bgp_state]}})

    def calls_for(self, resource):
        return [c for c in self.get.call_args_list if c.kwargs['params']['resource'] == resource]


@pytest.fixture
def fake_ripe(mocker, make_response):
    return FakeRipe(mocker, make_response)


def test_end_to_end_change_and_withdrawal(mocker, config, store, fake_ripe):
    """Test three runs: first sighting, a changed hop, then a withdrawal."""
    config['monitoring']['show_asn_names'] = False
    mock_post = mocker.patch('requests.post')
    reconciler = build_reconciler(config, store)

    fake_ripe.bgp_state = [['15169', '3356']]
    assert reconciler.run().changes_detected == 1
    snapshot = store.get_current_route('8.8.8.0/24')
    assert (snapshot.status, snapshot.path) == (RouteStatus.ACTIVE, '15169 3356')
    history = store.get_history()
    assert len(history) == 1
    assert history[0].previous_path == FIRST_CHECK_PATH

    fake_ripe.bgp_state = ['15169 6939']
    mock_post.reset_mock()
    assert reconciler.run().changes_detected == 1
    history = store.get_history()
    assert len(history) == 2
    assert '15169 3356' in history[0].previous_path
    assert '15169 6939' in history[0].current_path
    assert history[0].status is RouteStatus.ACTIVE
    assert store.get_current_route('8.8.8.0/24').path == '15169 6939'
    mock_post.assert_called_once()
    assert 'BGP Route CHANGED' in mock_post.call_args.kwargs['data']['text']

    fake_ripe.bgp_state = []
    mock_post.reset_mock()
    assert reconciler.run().changes_detected == 1
    snapshot = store.get_current_route('8.8.8.0/24')
    assert (snapshot.status, snapshot.path) == (RouteStatus.NOT_IN_TABLE, 'Not in table')
    assert store.get_history(limit=1)[0].status is RouteStatus.NOT_IN_TABLE
    mock_post.assert_called_once()
    assert 'BGP Route WITHDRAWN' in mock_post.call_args.kwargs['data']['text']


def test_end_to_end_name_fallback_is_cached(mocker, config, store, fake_ripe):
    """Test that an unreachable holder source renders AS<n> and is asked only once per run."""
    mocker.patch('requests.post')
    config['monitoring']['prefixes'] = {'192.0.2.0/24': 'Lab', '198.51.100.0/24': 'Edge'}
    fake_ripe.bgp_state = [[15169, 64512]]
    fake_ripe.unreachable.add('AS64512')

    build_reconciler(config, store).run()

    snapshot = store.get_current_route('192.0.2.0/24')
    assert snapshot.path == '15169 64512'
    assert snapshot.resolved_path == 'AS15169 (GOOGLE) AS64512 (AS64512)'
    assert 'AS64512' in store.get_history(prefix='198.51.100.0/24')[0].current_path
    assert len(fake_ripe.calls_for('AS64512')) == 1
    assert len(fake_ripe.calls_for('AS15169')) == 1


def test_end_to_end_upstream_outage_keeps_state(mocker, config, store, fake_ripe, make_response):
    """Test that a non-2xx from bgp-state leaves the stored snapshot alone."""
    config['monitoring']['show_asn_names'] = False
    mocker.patch('requests.post')
    reconciler = build_reconciler(config, store)
    fake_ripe.bgp_state = [['15169', '3356']]
    reconciler.run()
    before = store.get_current_route('8.8.8.0/24')

    fake_ripe.get.side_effect = lambda url, **kwargs: make_response(
        status_error=requests.exceptions.HTTPError('502 Bad Gateway')
    )
    summary = reconciler.run()

    assert summary.errors == 1
    assert store.get_current_route('8.8.8.0/24') == before
    assert len(store.get_history()) == 1


def test_end_to_end_telegram_outage_keeps_state(mocker, config, store, fake_ripe):
    """Test that transitions are recorded while the Telegram API is unreachable."""
    config['monitoring']['show_asn_names'] = False
    mock_post = mocker.patch('requests.post', side_effect=requests.exceptions.ConnectionError('telegram down'))
    reconciler = build_reconciler(config, store)

    fake_ripe.bgp_state = [['15169', '3356']]
    assert reconciler.run().changes_detected == 1
    fake_ripe.bgp_state = [['15169', '6939']]
    assert reconciler.run().changes_detected == 1

    assert mock_post.call_count == 2
    assert store.get_current_route('8.8.8.0/24').path == '15169 6939'
    assert len(store.get_history()) == 2
