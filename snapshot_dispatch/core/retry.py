"""
Retry policies for failed fetches.

The dispatcher asks its policy after every failure whether the key goes
back on the queue. UnboundedRetry requeues forever; BoundedRetry gives up
after max_attempts and the key lands in the dead-letter list.
"""

import logging

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Decides whether a failed key is requeued."""

    def should_retry(self, key: str, attempts: int, error: str) -> bool:
        """
        Args:
            key: The key whose fetch failed
            attempts: Failures recorded for this key so far, including this one
            error: Error message reported by the worker
        """
        raise NotImplementedError


class UnboundedRetry(RetryPolicy):
    """Requeue every failure, no backoff."""

    def should_retry(self, key: str, attempts: int, error: str) -> bool:
        return True


class BoundedRetry(RetryPolicy):
    """Requeue until a key has failed max_attempts times."""

    def __init__(self, max_attempts: int = 3):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts

    def should_retry(self, key: str, attempts: int, error: str) -> bool:
        if attempts >= self.max_attempts:
            logger.warning(f"Giving up on {key} after {attempts} failed attempts: {error}")
            return False
        return True
