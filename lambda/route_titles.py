"""Route display titles, cached in memory and in the key-value store."""

import json
import logging

from config import ROUTE_TITLES_KEY, ROUTE_TITLES_TTL_MS

logger = logging.getLogger(__name__)


class RouteTitles:
    """Best-effort route tag -> title lookup with its own staleness check.

    Titles are kept on the instance and, when a store is given, persisted
    under ROUTE_TITLES_KEY so separate invocations can share them.
    """

    def __init__(self, client, store=None, ttl_ms=ROUTE_TITLES_TTL_MS):
        self.client = client
        self.store = store
        self.ttl_ms = ttl_ms
        self._titles = None
        self._fetched_at_ms = None

    def _fresh(self, fetched_at_ms, now_ms):
        return fetched_at_ms is not None and now_ms - fetched_at_ms < self.ttl_ms

    def _read_stored(self):
        if self.store is None:
            return None
        try:
            raw = self.store.get(ROUTE_TITLES_KEY)
            if not raw:
                return None
            data = json.loads(raw)
            titles = data['titles']
            fetched_at_ms = data['fetched_at_ms']
        except Exception as e:
            logger.warning(f'Could not read cached route titles: {e}')
            return None
        if not isinstance(titles, dict) or not isinstance(fetched_at_ms, (int, float)):
            return None
        return titles, fetched_at_ms

    def _write_stored(self, titles, now_ms):
        if self.store is None:
            return
        try:
            self.store.set(ROUTE_TITLES_KEY, json.dumps(
                {'fetched_at_ms': now_ms, 'titles': titles}, separators=(',', ':')))
        except Exception as e:
            logger.warning(f'Could not cache route titles: {e}')

    def get(self, now_ms):
        """Return {tag: title}; never raises."""
        if self._titles is not None and self._fresh(self._fetched_at_ms, now_ms):
            return self._titles

        stored = self._read_stored()
        if stored and self._fresh(stored[1], now_ms):
            self._titles, self._fetched_at_ms = stored
            return self._titles

        try:
            titles = self.client.get_route_titles()
        except Exception as e:
            logger.warning(f'Route titles unavailable, serving last known: {e}')
            if self._titles is not None:
                return self._titles
            return stored[0] if stored else {}

        self._titles, self._fetched_at_ms = titles, now_ms
        self._write_stored(titles, now_ms)
        logger.info(f'Route titles refreshed: {len(titles)} routes')
        return titles
