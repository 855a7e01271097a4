"""Common utilities for the converger engine."""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def canonical_json(data: Any) -> str:
    """Serialize data deterministically (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)


def content_hash(data: Any) -> str:
    """Return sha256 hex digest of the canonical JSON form of data."""
    return hashlib.sha256(canonical_json(data).encode('utf-8')).hexdigest()


def retry_call(
    func: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    describe: str = 'call',
) -> tuple[T, int]:
    """Call func until it succeeds or the attempt budget is spent.

    Args:
        func: Zero-argument callable to invoke
        max_attempts: Total attempts including the first
        delay: Seconds to sleep before the second attempt
        backoff: Multiplier applied to delay after each retry
        should_retry: Predicate deciding whether an exception is retryable.
            Exceptions it rejects propagate immediately.
        describe: Label used in log messages

    Returns:
        (result, attempts) tuple

    Raises:
        The last exception raised by func once retries are exhausted
    """
    attempt = 0
    wait = delay
    while True:
        attempt += 1
        try:
            return func(), attempt
        except Exception as e:
            if attempt >= max_attempts:
                raise
            if should_retry is not None and not should_retry(e):
                raise
            logger.warning(f"{describe} failed (attempt {attempt}/{max_attempts}): {e}; "
                           f"retrying in {wait:.1f}s")
            if wait > 0:
                time.sleep(wait)
            wait *= backoff
