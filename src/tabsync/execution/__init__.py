"""Execution layer: HTTP client with retry, record transform and the batch sync loop."""

from tabsync.execution.retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy
from tabsync.execution.client import ApiClient, Page
from tabsync.execution.transform import RowTransformer, dig
from tabsync.execution.batch_loop import BatchSyncLoop, SyncOutcome, SyncStatus

__all__ = [
    "ApiClient",
    "BatchSyncLoop",
    "ExponentialBackoff",
    "NoRetry",
    "Page",
    "RetryContext",
    "RetryStrategy",
    "RowTransformer",
    "SyncOutcome",
    "SyncStatus",
    "dig",
]
