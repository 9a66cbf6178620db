"""Redis client and distributed locks"""
import logging
import secrets
import time
from typing import Optional

import redis

from billing.core.config import settings
from billing.core.errors import BillingError, ErrorCode

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# Compare-and-delete so a holder whose lock expired cannot release a newer holder's lock
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def acquire_lock(client, lock_key: str, token: str, timeout: int = 30) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        client: Redis client
        lock_key: The lock key to acquire
        token: Value identifying the holder
        timeout: Lock timeout in seconds (default 30)

    Returns:
        True if lock was acquired, False if lock already exists
    """
    # SET key value NX EX timeout - atomically set if not exists with expiration
    result = client.set(lock_key, token, nx=True, ex=timeout)
    return result is True


def release_lock(client, lock_key: str, token: str) -> bool:
    """Release a distributed lock if it is still held by ``token``."""
    return bool(client.eval(_RELEASE_SCRIPT, 1, lock_key, token))


def subscription_lock_key(subscription_id: int) -> str:
    return f"lock:subscription:{subscription_id}"


class SubscriptionLock:
    """Per-subscription mutual exclusion.

    Serializes every read-then-write on one subscription's status across
    processes (webhook delivery, user sync, lifecycle actions). Waiting is
    bounded: when the lock cannot be obtained within ``wait`` seconds a
    retriable CONFLICT is raised instead of blocking.
    """

    def __init__(self, client, subscription_id: int, timeout: int = 30,
                 wait: float = 5.0, poll_interval: float = 0.05):
        self.client = client
        self.subscription_id = subscription_id
        self.key = subscription_lock_key(subscription_id)
        self.timeout = timeout
        self.wait = wait
        self.poll_interval = poll_interval
        self.token: Optional[str] = None

    def __enter__(self):
        token = secrets.token_hex(16)
        deadline = time.monotonic() + self.wait
        while True:
            if acquire_lock(self.client, self.key, token, self.timeout):
                self.token = token
                return self
            if time.monotonic() >= deadline:
                logger.warning(f"Timed out waiting for {self.key}")
                raise BillingError.conflict(
                    ErrorCode.CONCURRENT_UPDATE,
                    "Subscription is being updated by another request, try again",
                    subscription_id=self.subscription_id
                )
            time.sleep(self.poll_interval)

    def __exit__(self, exc_type, exc, tb):
        if self.token is not None:
            if not release_lock(self.client, self.key, self.token):
                logger.warning(f"Lock {self.key} expired before release")
            self.token = None
        return False
