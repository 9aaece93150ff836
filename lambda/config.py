"""Configuration constants for the TTC route speed tracker."""

import math

# Rolling window and sampling granularity (milliseconds)
WINDOW_MS = 24 * 60 * 60 * 1000
SAMPLE_INTERVAL_MS = 60 * 1000

# Bound per-route history so stored payloads stay small
MAX_SAMPLES_PER_ROUTE = math.ceil(WINDOW_MS / SAMPLE_INTERVAL_MS) + 2

# Store request limits (DynamoDB caps batch reads and transactions at 100 items)
MGET_CHUNK_SIZE = 100
SET_OPS_PER_PIPELINE = 100
STORE_CONCURRENCY = 8

# Key layout
KEY_NAMESPACE = 'ttc:avg24h:'
LAST_BUCKET_KEY = f'{KEY_NAMESPACE}last-bucket'
SAMPLES_KEY_PREFIX = f'{KEY_NAMESPACE}samples:'
AVG_KEY_PREFIX = f'{KEY_NAMESPACE}avg:'
ROUTE_TITLES_KEY = 'ttc:route-titles'

# Route titles refresh interval
ROUTE_TITLES_TTL_MS = 60 * 60 * 1000

# UmoIQ / NextBus public feed
FEED_URL = 'https://webservices.umoiq.com/service/publicXMLFeed'
DEFAULT_AGENCY = 'ttc'

# Store backends selectable through AVG24H_STORE
STORE_BACKENDS = ('dynamodb', 's3')
DEFAULT_S3_PREFIX = 'avg24h/'
