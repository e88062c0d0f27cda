import logging
import re

from flask import Blueprint, current_app, g, jsonify, request

from ..exceptions import StoreUnavailable
from ..models import validate_prefix

logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')

BEARER = re.compile(r'Bearer\s+(.*)$', re.IGNORECASE)


def _error(message, status):
    return jsonify({'success': False, 'error': message}), status


def _request_token():
    match = BEARER.match(request.headers.get('Authorization', ''))
    if match:
        return match.group(1).strip()
    return request.args.get('token') or request.form.get('token')


def _store():
    return current_app.extensions['state_store']


@bp.before_request
def authenticate():
    config = current_app.config['BGP_ALERTER']['api']
    if not config.get('enabled'):
        return _error('API is disabled', 503)

    token = _request_token()
    tokens = config.get('tokens', {})
    if not token or token not in tokens:
        return _error('Invalid or missing token', 401)
    g.token = token
    g.token_name = tokens[token]


@bp.errorhandler(StoreUnavailable)
def store_unavailable(e):
    logger.error(f"API request failed, state store unavailable: {e}")
    return _error('State store unavailable', 503)


@bp.route('/prefixes', methods=['POST'])
def add_prefix():
    data = request.get_json(silent=True) or request.form
    if not hasattr(data, 'get'):
        return _error('Request body must be a JSON object', 400)
    raw_prefix = data.get('prefix') or ''
    description = data.get('description') or ''
    if not isinstance(raw_prefix, str) or not isinstance(description, str):
        return _error('Prefix and description must be strings', 400)
    raw_prefix = raw_prefix.strip()
    description = description.strip()

    if not raw_prefix:
        return _error('Prefix is required', 400)
    try:
        prefix = validate_prefix(raw_prefix)
    except ValueError:
        return _error('Invalid prefix format. Expected an IPv4 CIDR such as 192.0.2.0/24', 400)

    static_prefixes = current_app.config['BGP_ALERTER']['monitoring']['prefixes']
    registered = {p.prefix for p in _store().list_monitored_prefixes(active_only=True)}
    if prefix in static_prefixes or prefix in registered:
        return _error(f'Prefix {prefix} is already being monitored', 409)

    record = _store().add_monitored_prefix(prefix, description, g.token_name, g.token)
    logger.info(f"Prefix {prefix} registered by {g.token_name}")

    # The first check runs in the background; the response does not wait for it
    current_app.extensions['check_queue'].submit(prefix, description)

    data = record.to_dict()
    data['check_scheduled'] = True
    return jsonify({'success': True, 'message': 'Prefix added successfully', 'data': data}), 201


@bp.route('/prefixes', methods=['GET'])
def list_prefixes():
    prefixes = _store().get_prefixes_by_token(g.token)
    return jsonify({'success': True, 'count': len(prefixes), 'data': [p.to_dict() for p in prefixes]})


@bp.route('/prefixes/<path:prefix>', methods=['DELETE'])
def remove_prefix(prefix):
    try:
        prefix = validate_prefix(prefix)
    except ValueError:
        return _error('Invalid prefix format. Expected an IPv4 CIDR such as 192.0.2.0/24', 400)

    if not _store().deactivate_prefix(prefix, token=g.token):
        return _error(f'Prefix {prefix} is not registered with this token', 404)
    logger.info(f"Prefix {prefix} deactivated by {g.token_name}")
    return jsonify({'success': True, 'message': f'Prefix {prefix} is no longer monitored'})
