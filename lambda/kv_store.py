"""Key-value store backends used to persist rolling-average state.

Both backends expose the same small interface:

    get(key) -> str | None
    mget(keys) -> list, same order as keys; None for absent keys and
        READ_FAILED for keys whose read failed
    set(key, value)

DynamoKeyValueStore also offers pipeline(), which batches several sets into
one atomic TransactWriteItems call.
"""

import os
import time
import logging
from concurrent.futures import ThreadPoolExecutor

import boto3

from config import STORE_BACKENDS, DEFAULT_S3_PREFIX, STORE_CONCURRENCY

logger = logging.getLogger(__name__)


class _ReadFailed:
    def __repr__(self):
        return 'READ_FAILED'


READ_FAILED = _ReadFailed()

DYNAMO_BATCH_GET_LIMIT = 100
DYNAMO_TRANSACTION_LIMIT = 100
UNPROCESSED_RETRIES = 3


class DynamoPipeline:
    def __init__(self, store):
        self.store = store
        self.items = []

    def set(self, key, value):
        self.items.append({
            'Put': {
                'TableName': self.store.table_name,
                'Item': self.store._item(key, value),
            }
        })
        return self

    def exec(self):
        if not self.items:
            return None
        if len(self.items) > DYNAMO_TRANSACTION_LIMIT:
            raise ValueError(
                f'Pipeline holds {len(self.items)} writes; a transaction allows {DYNAMO_TRANSACTION_LIMIT}'
            )
        return self.store.dynamodb.transact_write_items(TransactItems=self.items)


class DynamoKeyValueStore:
    """String values in a DynamoDB table keyed by a string partition key 'k'."""

    def __init__(self, table_name, client=None):
        self.dynamodb = client or boto3.client('dynamodb')
        self.table_name = table_name

    @staticmethod
    def _item(key, value):
        return {'k': {'S': key}, 'v': {'S': value}}

    @staticmethod
    def _value(item):
        if not item:
            return None
        return item.get('v', {}).get('S')

    def get(self, key):
        resp = self.dynamodb.get_item(TableName=self.table_name, Key={'k': {'S': key}})
        return self._value(resp.get('Item'))

    def mget(self, keys):
        """Read many keys with BatchGetItem, preserving input order."""
        found = {}
        failed = set()

        for i in range(0, len(keys), DYNAMO_BATCH_GET_LIMIT):
            part = list(dict.fromkeys(keys[i:i + DYNAMO_BATCH_GET_LIMIT]))
            request = {self.table_name: {'Keys': [{'k': {'S': k}} for k in part]}}

            for attempt in range(UNPROCESSED_RETRIES + 1):
                resp = self.dynamodb.batch_get_item(RequestItems=request)
                for item in resp.get('Responses', {}).get(self.table_name, []):
                    found[item['k']['S']] = self._value(item)

                unprocessed = resp.get('UnprocessedKeys', {}).get(self.table_name)
                if not unprocessed or not unprocessed.get('Keys'):
                    break
                if attempt == UNPROCESSED_RETRIES:
                    pending = [k['k']['S'] for k in unprocessed['Keys']]
                    logger.warning(f'DynamoDB left {len(pending)} keys unprocessed after {attempt + 1} attempts')
                    failed.update(pending)
                    break
                request = {self.table_name: unprocessed}
                time.sleep(0.05 * 2 ** attempt)

        return [READ_FAILED if k in failed else found.get(k) for k in keys]

    def set(self, key, value):
        self.dynamodb.put_item(TableName=self.table_name, Item=self._item(key, value))

    def pipeline(self):
        return DynamoPipeline(self)


class S3KeyValueStore:
    """One S3 object per key under a prefix."""

    def __init__(self, bucket, prefix=DEFAULT_S3_PREFIX, client=None):
        self.s3 = client or boto3.client('s3')
        self.bucket = bucket
        self.prefix = prefix

    def _object_key(self, key):
        return f'{self.prefix}{key}'

    def get(self, key):
        """Read a value. Returns None if the key does not exist."""
        try:
            obj = self.s3.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except self.s3.exceptions.NoSuchKey:
            return None
        return obj['Body'].read().decode('utf-8')

    def _get_or_failed(self, key):
        try:
            return self.get(key)
        except Exception as e:
            logger.warning(f'Error reading {key}: {e}')
            return READ_FAILED

    def mget(self, keys):
        """One GET per key on a bounded thread pool, in input order."""
        if not keys:
            return []
        with ThreadPoolExecutor(max_workers=min(STORE_CONCURRENCY, len(keys))) as pool:
            return list(pool.map(self._get_or_failed, keys))

    def set(self, key, value):
        self.s3.put_object(
            Bucket=self.bucket,
            Key=self._object_key(key),
            Body=value.encode('utf-8'),
            ContentType='text/plain; charset=utf-8',
        )


def get_kv_store(environ=None):
    """Build the configured store, or None when persistence is not configured.

    Raises ValueError for an unknown backend or a backend missing its
    required settings.
    """
    env = os.environ if environ is None else environ
    backend = (env.get('AVG24H_STORE') or '').strip().lower()
    if not backend:
        return None

    if backend not in STORE_BACKENDS:
        raise ValueError(f'Unknown AVG24H_STORE {backend!r}; expected one of {", ".join(STORE_BACKENDS)}')

    if backend == 'dynamodb':
        table = (env.get('AVG24H_TABLE_NAME') or '').strip()
        if not table:
            raise ValueError('AVG24H_STORE=dynamodb requires AVG24H_TABLE_NAME')
        return DynamoKeyValueStore(table)

    bucket = (env.get('BUCKET_NAME') or '').strip()
    if not bucket:
        raise ValueError('AVG24H_STORE=s3 requires BUCKET_NAME')
    return S3KeyValueStore(bucket, prefix=env.get('AVG24H_S3_PREFIX', DEFAULT_S3_PREFIX))
