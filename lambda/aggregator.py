"""Aggregation logic: live per-route speeds and the time-weighted 24h average."""

import math
import logging

from config import SAMPLE_INTERVAL_MS

logger = logging.getLogger(__name__)


def round1(n):
    """Round to one decimal place, halves rounded up."""
    return math.floor(n * 10 + 0.5) / 10


def parse_speed_kmh(value):
    """Parse a feed speedKmHr value.

    Missing, empty, non-numeric, non-finite and negative values are invalid
    and return None. 0 is a valid speed (stopped vehicle).
    """
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip()
    if not raw:
        return None

    try:
        n = float(raw)
    except ValueError:
        return None
    if not math.isfinite(n) or n < 0:
        return None
    return n


def compute_live_speeds(vehicles):
    """Average the current speed of active vehicles per route.

    Args:
        vehicles: list of dicts with 'route' and raw 'speed' keys

    Returns:
        dict of route_tag -> {'speed': mean km/h (1 decimal), 'vehicle_count': n},
        in first-seen route order. Vehicles with no route or an invalid speed
        are skipped.
    """
    totals = {}
    skipped = 0
    for vehicle in vehicles:
        route = vehicle.get('route')
        if not isinstance(route, str) or not route:
            skipped += 1
            continue
        speed = parse_speed_kmh(vehicle.get('speed'))
        if speed is None:
            skipped += 1
            continue
        entry = totals.setdefault(route, [0.0, 0])
        entry[0] += speed
        entry[1] += 1

    if skipped:
        logger.info(f'Skipped {skipped} vehicles without a route or valid speed')

    return {
        route: {'speed': round1(total / count), 'vehicle_count': count}
        for route, (total, count) in totals.items()
        if count > 0
    }


def compute_avg_24h(history, now_ms, cutoff_ms, interval_ms=SAMPLE_INTERVAL_MS):
    """Time-weighted average speed over [cutoff_ms, now_ms].

    Each sample represents the span from its timestamp until the next sample,
    one bucket interval, or now, whichever comes first. Gaps longer than one
    interval therefore contribute nothing rather than extending the previous
    sample. Returns None when no sample covers any time in the window.
    """
    if not history:
        return None
    ordered = sorted(history, key=lambda s: s.t)

    weighted_sum = 0.0
    total_weight = 0.0

    for i, sample in enumerate(ordered):
        start = max(sample.t, cutoff_ms)
        if start > now_ms:
            continue

        next_t = ordered[i + 1].t if i + 1 < len(ordered) else math.inf
        end = min(now_ms, next_t, sample.t + interval_ms)
        duration = end - start
        if duration <= 0:
            continue

        weighted_sum += sample.v * duration
        total_weight += duration

    if total_weight <= 0:
        return None
    return weighted_sum / total_weight
