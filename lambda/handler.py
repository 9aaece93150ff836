"""Lambda handler for the TTC route speed API.

Invoked through API Gateway on every frontend poll. Fetches live vehicle
positions, averages speed per route, attaches route titles and, when a store
is configured, the rolling 24h average for each route.
"""

import os
import json
import time
import logging
from datetime import datetime, timezone

from ttc_client import TTCClient
from aggregator import compute_live_speeds
from avg24h import LiveReading, get_avg24h_speeds, unavailable
from route_titles import RouteTitles
from kv_store import get_kv_store
from config import DEFAULT_AGENCY

logger = logging.getLogger()
logger.setLevel(logging.INFO)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Content-Type': 'application/json',
}


def _response(status_code, body):
    return {
        'statusCode': status_code,
        'headers': dict(CORS_HEADERS),
        'body': json.dumps(body, separators=(',', ':')),
    }


def build_route_speeds(vehicles, titles, store, now_ms):
    """Assemble the per-route response rows, fastest route first."""
    live = compute_live_speeds(vehicles)
    readings = [LiveReading(tag, row['speed']) for tag, row in live.items()]

    if store is None:
        avg = unavailable(live)
    else:
        avg = get_avg24h_speeds(store, readings, now_ms)

    updated_at = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).isoformat()
    rows = []
    for tag, row in live.items():
        rows.append({
            'routeTag': tag,
            'routeTitle': titles.get(tag),
            'liveSpeedKmh': row['speed'],
            'vehicleCount': row['vehicle_count'],
            'avg24hSpeedKmh': avg.averages.get(tag),
            'avg24hAvailable': avg.available,
            'updatedAt': updated_at,
        })

    rows.sort(key=lambda r: r['liveSpeedKmh'], reverse=True)
    return rows


# Resolved once per container; a misconfigured store fails the cold start.
client = TTCClient(agency=os.environ.get('TTC_AGENCY', DEFAULT_AGENCY))
store = get_kv_store()
titles = RouteTitles(client, store=store)
if store is None:
    logger.info('No store configured; 24h averages unavailable')


def handler(event, context):
    try:
        now_ms = int(time.time() * 1000)

        # 1. Fetch live vehicle positions
        try:
            vehicles = client.get_vehicle_locations()
        except Exception as e:
            logger.error(f'Failed to fetch vehicle locations: {e}')
            return _response(502, {'error': 'Failed to fetch TTC data'})
        logger.info(f'Fetched {len(vehicles)} vehicle positions')

        # 2. Route titles (best effort)
        route_titles = titles.get(now_ms)

        # 3. Live and 24h speeds per route
        rows = build_route_speeds(vehicles, route_titles, store, now_ms)
        logger.info(f'Serving {len(rows)} routes')
        return _response(200, rows)
    except Exception:
        logger.exception('Error serving TTC route speeds')
        return _response(500, {'error': 'Internal server error'})
