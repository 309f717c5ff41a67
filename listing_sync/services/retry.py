import random

from listing_sync.core.errors import SyncError, TransportFailure, UpstreamRejection


def compute_backoff_seconds(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    # exponential backoff with jitter
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, exp / 3)
    return exp + jitter


def is_retryable(exc: SyncError) -> bool:
    if isinstance(exc, TransportFailure):
        return True
    if isinstance(exc, UpstreamRejection):
        return exc.retryable
    return False
