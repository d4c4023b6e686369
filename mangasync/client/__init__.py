"""Client module - Rate-limited provider access."""

from mangasync.client.api_client import ApiClient, ClientStats, GraphQLClient
from mangasync.client.ratelimit import TokenBucket, interruptible_sleep
from mangasync.client.retry import RetryPolicy, is_retryable_status, parse_retry_after

__all__ = [
    "ApiClient",
    "ClientStats",
    "GraphQLClient",
    "RetryPolicy",
    "TokenBucket",
    "interruptible_sleep",
    "is_retryable_status",
    "parse_retry_after",
]
