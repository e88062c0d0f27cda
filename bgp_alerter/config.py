import copy
import json
import os

from dotenv import load_dotenv

from .exceptions import ConfigurationInvalid
from .models import validate_prefix

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

DEFAULT_CONFIG = {
    'database': {
        'backend': 'sqlite',  # 'sqlite' or 'mongodb'
        'sqlite_path': os.path.join(project_root, 'data', 'bgp_monitor.db'),
        'mongodb_uri': 'mongodb://localhost:27017/',
        'mongodb_name': 'bgp_alerter',
    },
    'ripe': {
        'api_url': 'https://stat.ripe.net/data/bgp-state/data.json',
        'asn_api_url': 'https://stat.ripe.net/data/as-overview/data.json',
        'timeout': 30,
        'asn_timeout': 10,
        'asn_delay': 0.1,
    },
    'telegram': {
        'enabled': True,
        'bot_token': '',
        'chat_id': '',
        'api_base': 'https://api.telegram.org',
        'timeout': 10,
    },
    'monitoring': {
        'check_interval': 300,
        'prefixes': {},
        'resource': None,
        'show_asn_names': True,
        'max_workers': 1,
    },
    'api': {
        'enabled': True,
        'tokens': {},
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}

BACKENDS = ('sqlite', 'mongodb')


def _truthy(value):
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _deep_merge(base, overrides):
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_tokens(raw):
    """Parses `token:name,token:name` into a dict."""
    tokens = {}
    for item in raw.split(','):
        token, _, name = item.strip().partition(':')
        if token:
            tokens[token] = name or token
    return tokens


def apply_env_overrides(config):
    """Secrets and deployment switches come from the environment (.env)."""
    env = os.environ
    if env.get('TELEGRAM_BOT_TOKEN'):
        config['telegram']['bot_token'] = env['TELEGRAM_BOT_TOKEN']
    if env.get('TELEGRAM_CHAT_ID'):
        config['telegram']['chat_id'] = env['TELEGRAM_CHAT_ID']
    if env.get('TELEGRAM_ENABLED'):
        config['telegram']['enabled'] = _truthy(env['TELEGRAM_ENABLED'])
    if env.get('BGP_ALERTER_DB_BACKEND'):
        config['database']['backend'] = env['BGP_ALERTER_DB_BACKEND']
    if env.get('BGP_ALERTER_DB_PATH'):
        config['database']['sqlite_path'] = env['BGP_ALERTER_DB_PATH']
    if env.get('MONGODB_URI'):
        config['database']['mongodb_uri'] = env['MONGODB_URI']
    if env.get('BGP_ALERTER_API_TOKENS'):
        config['api']['tokens'].update(_parse_tokens(env['BGP_ALERTER_API_TOKENS']))
    if env.get('LOG_LEVEL'):
        config['logging']['level'] = env['LOG_LEVEL']
    return config


def validate_config(config):
    """Raises ConfigurationInvalid if the merged configuration cannot drive a run."""
    backend = config['database'].get('backend')
    if backend not in BACKENDS:
        raise ConfigurationInvalid(f"Unknown database backend {backend!r}, expected one of {BACKENDS}")

    monitoring = config['monitoring']
    prefixes = monitoring.get('prefixes') or {}
    if isinstance(prefixes, list):
        # A bare list of prefixes is accepted, descriptions default to empty
        prefixes = {prefix: '' for prefix in prefixes}
    if not isinstance(prefixes, dict):
        raise ConfigurationInvalid("monitoring.prefixes must map prefix -> description")

    canonical = {}
    for prefix, description in prefixes.items():
        try:
            canonical[validate_prefix(prefix)] = description or ''
        except ValueError as e:
            raise ConfigurationInvalid(f"Invalid prefix {prefix!r} in monitoring.prefixes: {e}")
    monitoring['prefixes'] = canonical

    for key in ('check_interval', 'max_workers'):
        if not isinstance(monitoring.get(key), int) or monitoring[key] < 1:
            raise ConfigurationInvalid(f"monitoring.{key} must be a positive integer")

    if not isinstance(config['api'].get('tokens'), dict):
        raise ConfigurationInvalid("api.tokens must map token -> name")
    return config


def load_config(path=None):
    """Loads config.json, layers .env overrides on top and validates the result."""
    load_dotenv(dotenv_path=os.path.join(project_root, '.env'))

    explicit = path or os.getenv('BGP_ALERTER_CONFIG')
    config_path = explicit or os.path.join(project_root, 'config.json')

    file_config = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationInvalid(f"Cannot read {config_path}: {e}")
        if not isinstance(file_config, dict):
            raise ConfigurationInvalid(f"{config_path} must contain a JSON object")
    elif explicit:
        raise ConfigurationInvalid(f"Configuration file {config_path} does not exist")

    config = _deep_merge(DEFAULT_CONFIG, file_config)
    return validate_config(apply_env_overrides(config))
