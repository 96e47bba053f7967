"""
core/retry.py -- Retry-once decorator for read-only store calls.

Read-only lookups (account by email, active session by hash, role catalog)
may hit a transient store failure: a locked SQLite file, a dropped pooled
connection. Those are retried exactly once after a short backoff with
jitter, then the TransientError propagates to the caller.

Writes and single-use token consumption are never decorated with this: the
first resolution of a conditional update is authoritative, and replaying a
write whose outcome is unknown could double-apply it.
"""

import functools
import logging
import random
import time
from typing import Any, Callable

from core.errors import TransientError

logger = logging.getLogger("nestguard.retry")


def retry_once(base_delay: float = 0.05, jitter: bool = True) -> Callable:
    """Decorator: call the wrapped function, and on TransientError call it one more time.

    Args:
        base_delay: Seconds to wait before the single retry.
        jitter:     Add up to +/-20% random jitter so concurrent requests that
                    failed together do not retry in lockstep.

    Non-transient exceptions propagate immediately.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            try:
                return func(*args, **kwargs)
            except TransientError as exc:
                delay = base_delay
                if jitter:
                    delay *= random.uniform(0.8, 1.2)
                logger.info("Transient failure in %s (%s); retrying once in %.3fs", func.__name__, exc, delay)
                time.sleep(delay)
                return func(*args, **kwargs)

        return wrapper

    return decorator
