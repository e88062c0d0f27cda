import logging
import time

import requests

from ..exceptions import UpstreamUnavailable
from ..models import RouteInfo, RouteStatus, path_from_upstream

logger = logging.getLogger(__name__)

# --- API Communication ---
RIPE_API_URL = "https://stat.ripe.net/data/bgp-state/data.json"
USER_AGENT = "BGP-Alerter/1.0"


def get_json(url, params, timeout, resource):
    """
    GETs a RIPEstat endpoint and returns the decoded JSON object.

    Raises:
        UpstreamUnavailable: on connection errors, timeouts, non-2xx responses
            or a body that is not a JSON object.
    """
    try:
        response = requests.get(url, params=params, headers={'User-Agent': USER_AGENT}, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.RequestException as e:
        raise UpstreamUnavailable(resource, f"request failed: {e}") from e
    except ValueError as e:
        raise UpstreamUnavailable(resource, f"malformed JSON: {e}") from e

    if not isinstance(data, dict):
        raise UpstreamUnavailable(resource, "response body is not a JSON object")
    return data


def parse_bgp_state(prefix, payload):
    """Normalizes a bgp-state response into a RouteInfo attributed to prefix."""
    data = payload.get('data')
    bgp_state = data.get('bgp_state') if isinstance(data, dict) else None
    if not bgp_state or not isinstance(bgp_state, list):
        return RouteInfo.not_in_table(prefix)

    paths = []
    for state in bgp_state:
        if not isinstance(state, dict):
            continue
        path = path_from_upstream(state.get('path'))
        if path is not None:
            paths.append(path.render())

    if not paths:
        return RouteInfo.not_in_table(prefix)

    # Upstream ordering defines the best path
    return RouteInfo(prefix, RouteStatus.ACTIVE, paths[0], as_path=paths[0], paths=paths)


class RouteLookupClient:
    """Fetches the current best path for a prefix from the RIPEstat looking glass."""

    def __init__(self, api_url=RIPE_API_URL, timeout=30):
        self.api_url = api_url
        self.timeout = timeout

    def fetch_route(self, prefix, resource=None):
        """
        Returns the RouteInfo for prefix. Any upstream failure yields an
        `error` result instead of raising.

        Args:
            prefix: CIDR prefix the result is attributed to
            resource: optional ASN or prefix sent upstream instead of prefix
        """
        params = {
            'resource': resource or prefix,
            # Ask for "now" rather than whatever view the upstream has cached
            'timestamp': int(time.time()),
        }
        try:
            payload = get_json(self.api_url, params, self.timeout, prefix)
        except UpstreamUnavailable as e:
            logger.warning(f"RIPEstat bgp-state lookup failed for {e}")
            return RouteInfo.error(prefix)
        return parse_bgp_state(prefix, payload)
