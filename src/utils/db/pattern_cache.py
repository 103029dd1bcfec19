"""
Shared pattern cache tier operations.

The cache table is keyed by namespace (partition key) and cacheKey (sort key).
Every cache owner lives in its own partition, so all enumeration here is a
key-condition query inside one partition; nothing ever scans the table or
touches another namespace.
"""

import time
import logging
from typing import Dict, Any, List, Optional

from boto3.dynamodb.conditions import Key

from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 25


def _cache_table(operation: str) -> Any:
    table = tables.pattern_cache
    if not table:
        logger.error(f"DB: Pattern cache table not initialized for {operation}")
        raise ConnectionError("Database table not initialized")
    return table


@monitor_performance(warn_threshold_ms=50)
@retry_on_throttle(max_attempts=2)
@dynamodb_operation("get_cache_entry")
def get_cache_entry(namespace: str, cache_key: str) -> Optional[Dict[str, Any]]:
    """
    Return the payload stored under cache_key, or None if absent or expired.

    DynamoDB TTL deletion is lazy, so expiry is also checked on read.
    """
    table = _cache_table("get_cache_entry")
    response = table.get_item(Key={'namespace': namespace, 'cacheKey': cache_key})
    item = response.get('Item')
    if not item:
        return None
    if int(item.get('expiresAt', 0)) <= int(time.time()):
        logger.debug(f"DB: Cache entry {namespace}/{cache_key} expired")
        return None
    return item.get('payload')


@retry_on_throttle(max_attempts=2)
@dynamodb_operation("put_cache_entries")
def put_cache_entries(namespace: str, entries: Dict[str, Dict[str, Any]], ttl_seconds: int) -> int:
    """Write payloads keyed by cache key. Returns the number written."""
    if not entries:
        return 0
    table = _cache_table("put_cache_entries")
    expires_at = int(time.time()) + ttl_seconds

    with table.batch_writer() as writer:
        for cache_key, payload in entries.items():
            writer.put_item(Item={
                'namespace': namespace,
                'cacheKey': cache_key,
                'payload': payload,
                'expiresAt': expires_at,
            })
    logger.debug(f"DB: Wrote {len(entries)} cache entries to {namespace}")
    return len(entries)


def put_cache_entry(namespace: str, cache_key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
    put_cache_entries(namespace, {cache_key: payload}, ttl_seconds)


@monitor_performance(operation_type="query", warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_cache_keys")
def list_cache_keys(namespace: str, prefix: Optional[str] = None) -> List[str]:
    """Enumerate cache keys in one namespace, optionally by key prefix."""
    table = _cache_table("list_cache_keys")
    condition = Key('namespace').eq(namespace)
    if prefix:
        condition = condition & Key('cacheKey').begins_with(prefix)

    params: Dict[str, Any] = {
        'KeyConditionExpression': condition,
        'ProjectionExpression': 'cacheKey',
    }
    keys: List[str] = []
    while True:
        response = table.query(**params)
        keys.extend(item['cacheKey'] for item in response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        params['ExclusiveStartKey'] = last_key
    return keys


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("delete_cache_keys")
def delete_cache_keys(namespace: str, cache_keys: List[str]) -> int:
    """Delete the given keys from one namespace. Returns the number deleted."""
    if not cache_keys:
        return 0
    table = _cache_table("delete_cache_keys")

    count = 0
    for i in range(0, len(cache_keys), BATCH_SIZE):
        with table.batch_writer() as writer:
            for cache_key in cache_keys[i:i + BATCH_SIZE]:
                writer.delete_item(Key={'namespace': namespace, 'cacheKey': cache_key})
                count += 1
    return count


def delete_cache_prefix(namespace: str, prefix: str) -> int:
    """Delete every key in namespace starting with prefix."""
    deleted = delete_cache_keys(namespace, list_cache_keys(namespace, prefix))
    logger.info(f"DB: Deleted {deleted} cache entries under {namespace}/{prefix}")
    return deleted


def delete_cache_namespace(namespace: str) -> int:
    """Delete every key in namespace. Other namespaces are untouched."""
    deleted = delete_cache_keys(namespace, list_cache_keys(namespace))
    logger.info(f"DB: Deleted {deleted} cache entries in namespace {namespace}")
    return deleted
