"""Rolling 24h average speeds per route, persisted in a key-value store.

Each call is independent; the store is the only shared state. Histories are
stored per route as compact JSON ``[[t, v], ...]`` with one sample per
one-minute bucket. Averages are cached under their own keys, and a marker
records the last bucket processed so repeated polls within a bucket only
read cached averages.

There is no lock: concurrent calls in the same bucket may both recompute and
write. Writes are idempotent per bucket, so the outcome is the same.
"""

import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

from config import (
    WINDOW_MS, LAST_BUCKET_KEY, SAMPLES_KEY_PREFIX, AVG_KEY_PREFIX,
    MGET_CHUNK_SIZE, SET_OPS_PER_PIPELINE, STORE_CONCURRENCY,
)
from samples import Sample, to_bucket_ms, as_number, decode_samples, encode_samples, upsert_sample
from aggregator import compute_avg_24h, round1
from kv_store import READ_FAILED

logger = logging.getLogger(__name__)

LiveReading = namedtuple('LiveReading', ['route_tag', 'speed_kmh'])

Avg24hResult = namedtuple('Avg24hResult', ['averages', 'available'])


def sample_key(route_tag):
    return f'{SAMPLES_KEY_PREFIX}{route_tag}'


def avg_key(route_tag):
    return f'{AVG_KEY_PREFIX}{route_tag}'


def chunk(items, size):
    if size <= 0:
        return [items]
    return [items[i:i + size] for i in range(0, len(items), size)]


def mget_chunked(store, keys):
    """Read keys in bounded groups; the result lines up with keys."""
    values = []
    for part in chunk(keys, MGET_CHUNK_SIZE):
        part_values = list(store.mget(part))
        if len(part_values) != len(part):
            raise ValueError(f'Store returned {len(part_values)} values for {len(part)} keys')
        values.extend(part_values)
    return values


def set_many_chunked(store, kv_sets):
    """Write (key, value) pairs in bounded groups.

    Uses one pipeline per group when the store has one, otherwise a small
    thread pool per group. Any failed write raises.
    """
    if not kv_sets:
        return

    pipeline_factory = getattr(store, 'pipeline', None)
    if callable(pipeline_factory):
        for part in chunk(kv_sets, SET_OPS_PER_PIPELINE):
            p = pipeline_factory()
            for k, v in part:
                p.set(k, v)
            p.exec()
        return

    with ThreadPoolExecutor(max_workers=STORE_CONCURRENCY) as pool:
        for part in chunk(kv_sets, SET_OPS_PER_PIPELINE):
            list(pool.map(lambda kv: store.set(*kv), part))


def _valid_speed(value):
    n = as_number(value)
    if n is None or n < 0:
        return None
    return n


def _dedupe_readings(readings):
    live_by_tag = {}
    for reading in readings:
        tag, speed = reading
        live_by_tag[tag] = speed
    return live_by_tag


def _read_cached_averages(store, route_tags):
    values = mget_chunked(store, [avg_key(tag) for tag in route_tags])
    out = {}
    for tag, raw in zip(route_tags, values):
        v = None if raw is READ_FAILED else as_number(raw)
        out[tag] = None if v is None else round1(v)
    return out


def refresh_avg_24h(store, readings, now_ms):
    """Update per-route history for the current bucket and return 24h averages.

    Args:
        store: key-value store (see kv_store)
        readings: iterable of (route_tag, speed_kmh); later readings for the
            same route win
        now_ms: current time in ms since epoch

    Returns:
        dict of route_tag -> average km/h rounded to 1 decimal, or None when
        the route has no usable data. Store errors propagate.
    """
    live_by_tag = _dedupe_readings(readings)
    route_tags = list(live_by_tag)
    if not route_tags:
        return {}

    bucket_ms = to_bucket_ms(now_ms)
    cutoff_ms = now_ms - WINDOW_MS

    last_bucket_ms = as_number(store.get(LAST_BUCKET_KEY))
    if last_bucket_ms == bucket_ms:
        return _read_cached_averages(store, route_tags)

    existing = mget_chunked(store, [sample_key(tag) for tag in route_tags])

    kv_sets = []
    out = {}
    for tag, raw in zip(route_tags, existing):
        speed = _valid_speed(live_by_tag[tag])
        if speed is None:
            logger.warning(f'Ignoring invalid live speed for route {tag}: {live_by_tag[tag]!r}')
            out[tag] = None
            kv_sets.append((avg_key(tag), str(None)))
            continue
        if raw is READ_FAILED:
            # Leave the unread history alone; clear the cached average so
            # later polls in this bucket agree with this one.
            out[tag] = None
            kv_sets.append((avg_key(tag), str(None)))
            continue

        history = upsert_sample(decode_samples(raw), cutoff_ms, Sample(bucket_ms, speed))
        avg = compute_avg_24h(history, now_ms, cutoff_ms)

        out[tag] = None if avg is None else round1(avg)
        kv_sets.append((sample_key(tag), encode_samples(history)))
        kv_sets.append((avg_key(tag), str(out[tag])))

    set_many_chunked(store, kv_sets)
    store.set(LAST_BUCKET_KEY, str(bucket_ms))

    logger.info(f'Refreshed 24h averages for {len(route_tags)} routes, bucket {bucket_ms}')
    return out


def unavailable(route_tags):
    return Avg24hResult(averages={tag: None for tag in route_tags}, available=False)


def get_avg24h_speeds(store, readings, now_ms):
    """Best-effort 24h averages; never raises on store errors.

    Returns an Avg24hResult. On any store failure every route maps to None
    and available is False.
    """
    readings = list(readings)
    try:
        return Avg24hResult(averages=refresh_avg_24h(store, readings, now_ms), available=True)
    except Exception:
        logger.exception('24h average refresh failed; serving live speeds only')
        return unavailable(_dedupe_readings(readings))
