"""Per-route sample history: bucketing, (de)serialization and upsert/trim."""

import json
import math
from collections import namedtuple

from config import SAMPLE_INTERVAL_MS, MAX_SAMPLES_PER_ROUTE

Sample = namedtuple('Sample', ['t', 'v'])


def to_bucket_ms(now_ms, interval_ms=SAMPLE_INTERVAL_MS):
    """Quantize a timestamp (ms) down to the start of its interval bucket."""
    return (int(now_ms) // interval_ms) * interval_ms


def as_number(value):
    """Return value as a finite number, or None.

    Accepts ints, floats and numeric strings. Booleans are not numbers.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    if isinstance(value, str):
        try:
            n = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(n):
            return None
        return int(n) if n.is_integer() else n
    return None


def _sample_from_item(item):
    if isinstance(item, (list, tuple)):
        if len(item) < 2:
            return None
        t, v = as_number(item[0]), as_number(item[1])
    elif isinstance(item, dict):
        # Legacy named-field form
        t, v = as_number(item.get('t')), as_number(item.get('v'))
    else:
        return None

    if t is None or v is None or v < 0:
        return None
    return Sample(t, v)


def decode_samples(raw):
    """Decode a stored history.

    Accepts compact ``[[t, v], ...]`` and legacy ``[{"t": t, "v": v}, ...]``
    encodings, either as JSON text/bytes or already parsed. Bad entries are
    dropped; anything unreadable gives an empty history.
    """
    if not raw:
        return []

    parsed = raw
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []

    if not isinstance(parsed, list):
        return []

    out = []
    for item in parsed:
        sample = _sample_from_item(item)
        if sample is not None:
            out.append(sample)
    return out


def encode_samples(history):
    """Encode a history in the compact tuple form."""
    return json.dumps([[s.t, s.v] for s in history], separators=(',', ':'))


def _is_valid(sample):
    return (
        as_number(sample.t) is not None
        and as_number(sample.v) is not None
        and sample.v >= 0
    )


def upsert_sample(history, cutoff_ms, sample, max_samples=MAX_SAMPLES_PER_ROUTE):
    """Insert or replace the sample for its bucket and trim the history.

    Entries older than cutoff_ms are dropped, at most one entry is kept per
    bucket timestamp, and only the newest max_samples entries survive.
    Returns a new ascending list; the input is not modified.
    """
    kept = [s for s in history if _is_valid(s) and s.t >= cutoff_ms and s.t != sample.t]
    kept.append(sample)
    kept.sort(key=lambda s: s.t)

    if len(kept) > max_samples:
        return kept[-max_samples:]
    return kept
