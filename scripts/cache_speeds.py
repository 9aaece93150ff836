#!/usr/bin/env python3
"""Collect live TTC route speeds into a local JSON cache.

Samples the live feed once a minute for a number of days (default 30) and
appends one record per route to speed-cache/speed-data.json. Useful for
offline analysis of how route speeds vary over time.

Usage:
    python3 scripts/cache_speeds.py [days]
"""

import argparse
import json
import os
import sys
import time
from datetime import datetime, timezone

# Add lambda dir to path for shared modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lambda'))
from aggregator import compute_live_speeds
from route_titles import RouteTitles
from ttc_client import TTCClient

FETCH_INTERVAL_SEC = 60
DEFAULT_DURATION_DAYS = 30
CACHE_DIR = os.path.join(os.getcwd(), 'speed-cache')
CACHE_FILE = os.path.join(CACHE_DIR, 'speed-data.json')


def _now_ms():
    return int(time.time() * 1000)


def _iso(ms):
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _fresh_cache(now_ms):
    return {'startTime': _iso(now_ms), 'startTimeMs': now_ms, 'records': []}


def fetch_current_speeds(client, titles):
    """Return one record per route for the current feed snapshot, or [] on error."""
    now_ms = _now_ms()
    try:
        vehicles = client.get_vehicle_locations()
    except Exception as e:
        print(f"Error fetching speeds: {e}")
        return []

    route_titles = titles.get(now_ms)
    records = []
    for route, row in compute_live_speeds(vehicles).items():
        records.append({
            'timestamp': _iso(now_ms),
            'timestampMs': now_ms,
            'routeTag': route,
            'routeTitle': route_titles.get(route),
            'speedKmh': row['speed'],
            'vehicleCount': row['vehicle_count'],
        })
    return records


def load_cache(path=CACHE_FILE):
    if not os.path.exists(path):
        return _fresh_cache(_now_ms())

    try:
        with open(path, 'r') as f:
            data = json.load(f)
        records = data['records']
    except Exception as e:
        print(f"Error loading cache, starting fresh: {e}")
        return _fresh_cache(_now_ms())

    # Older caches have no startTimeMs
    if not data.get('startTimeMs'):
        data['startTimeMs'] = records[0]['timestampMs'] if records else _now_ms()
    return data


def save_cache(data, path=CACHE_FILE):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)


def collect_sample(client, titles, path=CACHE_FILE):
    print(f"[{_iso(_now_ms())}] Fetching speed data...")
    records = fetch_current_speeds(client, titles)
    if not records:
        print("  No data fetched (possibly an error or no vehicles active)")
        return 0

    cache = load_cache(path)
    cache['records'].extend(records)
    save_cache(cache, path)

    print(f"  Collected {len(records)} route speed records")
    print(f"  Total records in cache: {len(cache['records'])}")
    return len(records)


def print_stats(cache, path=CACHE_FILE):
    records = cache['records']
    if not records:
        print("No data collected yet")
        return

    route_tags = {r['routeTag'] for r in records}
    duration_hours = (records[-1]['timestampMs'] - records[0]['timestampMs']) / (1000 * 60 * 60)

    print("\n=== Cache Statistics ===")
    print(f"Start time: {cache['startTime']}")
    print(f"Duration: {duration_hours:.2f} hours ({duration_hours / 24:.2f} days)")
    print(f"Total records: {len(records)}")
    print(f"Unique routes: {len(route_tags)}")
    print(f"Cache file: {path}")
    print("========================\n")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Cache live TTC route speeds to a local JSON file.')
    parser.add_argument('days', nargs='?', type=int, default=DEFAULT_DURATION_DAYS,
                        help=f'collection duration in days (default {DEFAULT_DURATION_DAYS})')
    args = parser.parse_args(argv)
    if args.days <= 0:
        parser.error('duration must be a positive number of days')
    return args


def main(argv=None):
    args = parse_args(argv)
    client = TTCClient()
    titles = RouteTitles(client)

    print("=================================================")
    print("TTC Speed Data Caching Script")
    print("=================================================")
    print(f"Collection interval: {FETCH_INTERVAL_SEC} seconds")
    print(f"Target duration: {args.days} days")
    print(f"Cache directory: {CACHE_DIR}")
    print("=================================================\n")
    print("Press Ctrl+C to stop collection\n")

    cache = load_cache()
    print_stats(cache)
    start_ms = cache['startTimeMs']

    try:
        while True:
            collect_sample(client, titles)

            elapsed_days = (_now_ms() - start_ms) / (1000 * 60 * 60 * 24)
            if elapsed_days >= args.days:
                print(f"\nTarget duration of {args.days} days reached.")
                break
            time.sleep(FETCH_INTERVAL_SEC)
    except KeyboardInterrupt:
        print("\n\nStopping data collection...")

    print_stats(load_cache())


if __name__ == '__main__':
    main()
