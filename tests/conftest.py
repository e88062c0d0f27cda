import copy

import pytest

from bgp_alerter.config import DEFAULT_CONFIG
from bgp_alerter.storage.sqlite_store import SqliteStateStore


@pytest.fixture
def store(tmp_path):
    """A real SQLite state store in a temporary directory."""
    state_store = SqliteStateStore(tmp_path / 'state.db')
    yield state_store
    state_store.close()


@pytest.fixture
def config(tmp_path):
    """Default configuration pointed at a temporary database."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg['database']['sqlite_path'] = str(tmp_path / 'state.db')
    cfg['ripe']['asn_delay'] = 0
    cfg['telegram'].update({'bot_token': '123:SECRET', 'chat_id': '42'})
    cfg['monitoring']['prefixes'] = {'8.8.8.0/24': 'Google DNS'}
    cfg['api']['tokens'] = {'token-alice': 'Alice', 'token-bob': 'Bob'}
    return cfg


@pytest.fixture
def notifier(mocker):
    """A notifier double that records every alert."""
    mock_notifier = mocker.Mock()
    mock_notifier.enabled = True
    mock_notifier.configured = True
    mock_notifier.notify.return_value = True
    return mock_notifier


@pytest.fixture
def make_response(mocker):
    """Factory for fake requests.Response objects."""
    def _make(payload=None, status_error=None, json_error=None):
        response = mocker.Mock()
        if status_error is not None:
            response.raise_for_status.side_effect = status_error
        if json_error is not None:
            response.json.side_effect = json_error
        else:
            response.json.return_value = payload
        return response
    return _make
