"""
Key-value store backed by a DynamoDB table.

Provides the get/put-with-TTL contract used for rate records and analytics.
Items carry an ``expires_at`` attribute (epoch seconds) that is registered as
the table's TTL attribute. DynamoDB deletes expired items lazily, so reads
also ignore items that are already past their expiry.

Eventually consistent, no transactions.

Table schema:
    pk (S, partition key), value (B), expires_at (N, TTL attribute)
"""

import logging
import os
import time
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Configure DynamoDB client with timeouts to prevent infinite hangs
dynamodb_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=5,
    read_timeout=10
)

REGION = os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-west-2'))

# Initialize DynamoDB client at module level (thread-safe, reused across invocations)
dynamodb_client = boto3.client('dynamodb', region_name=REGION, config=dynamodb_config)

KV_TABLE_NAME = os.environ.get('KV_TABLE_NAME', '')


def is_configured() -> bool:
    """True if a table name is configured."""
    return bool(KV_TABLE_NAME)


def get(key: str) -> Optional[bytes]:
    """
    Read a value.

    Args:
        key: Item key (e.g. "rate:sender@example.com")

    Returns:
        The stored bytes, or None if absent or expired

    Raises:
        ValueError: If the store is not configured
        ClientError: If the DynamoDB call fails
    """
    if not is_configured():
        raise ValueError("KV_TABLE_NAME environment variable not set")

    try:
        response = dynamodb_client.get_item(
            TableName=KV_TABLE_NAME,
            Key={'pk': {'S': key}}
        )
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        logger.error(f"KV get failed: table={KV_TABLE_NAME}, key={key}, error_code={error_code}")
        raise

    item = response.get('Item')
    if not item:
        return None

    expires_at = item.get('expires_at', {}).get('N')
    if expires_at is not None and int(expires_at) <= int(time.time()):
        return None

    return item['value']['B']


def put(key: str, value: bytes, ttl_seconds: int) -> None:
    """
    Write a value with a time-to-live.

    Args:
        key: Item key
        value: Bytes to store
        ttl_seconds: Seconds until the item expires

    Raises:
        ValueError: If the store is not configured or ttl is not positive
        ClientError: If the DynamoDB call fails
    """
    if not is_configured():
        raise ValueError("KV_TABLE_NAME environment variable not set")
    if ttl_seconds <= 0:
        raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

    expires_at = int(time.time()) + int(ttl_seconds)

    try:
        dynamodb_client.put_item(
            TableName=KV_TABLE_NAME,
            Item={
                'pk': {'S': key},
                'value': {'B': value},
                'expires_at': {'N': str(expires_at)},
            }
        )
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        error_message = e.response.get('Error', {}).get('Message', str(e))
        logger.error(
            f"KV put failed: table={KV_TABLE_NAME}, key={key}, "
            f"error_code={error_code}, error_message={error_message}"
        )
        raise
