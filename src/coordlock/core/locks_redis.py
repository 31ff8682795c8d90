"""Redis-based distributed lock using SET NX EX semantics."""

from __future__ import annotations

from typing import Optional

from redis import Redis
from redis import exceptions as redis_errors

from coordlock.utils.logging import get_logger

from .locks import LockEngine
from .models import ErrorKind, LockHandle, LockOutcome, LockRequest, ReleaseOutcome


# Runs atomically on the server: no other client can re-acquire the key
# between the comparison and the delete.
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def _error_kind(exc: redis_errors.RedisError) -> ErrorKind:
    if isinstance(exc, (redis_errors.ConnectionError, redis_errors.TimeoutError)):
        return ErrorKind.BACKEND_UNAVAILABLE
    return ErrorKind.BACKEND_REJECTED


class RedisLockEngine(LockEngine):
    """Single-key lock: one ``SET NX EX`` to take it, one script to drop it.

    There is no retry and no ordering between competing callers; whoever
    reaches the server first while the key is absent wins.
    """

    backend = "redis"

    def __init__(self, redis: Optional[Redis], *, key_prefix: str = "") -> None:
        self._redis = redis
        self._key_prefix = key_prefix
        self.logger = get_logger("RedisLockEngine")

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def acquire(self, request: LockRequest) -> LockOutcome:
        invalid = self._check_request(request)
        if invalid is not None:
            return invalid
        if self._redis is None:
            return LockOutcome.failed(ErrorKind.INVALID_ARGUMENT, "redis connection is required")

        key = self._full_key(request.key)
        try:
            was_set = self._redis.set(key, request.token, nx=True, ex=request.effective_ttl())
        except redis_errors.RedisError as exc:
            self.logger.warning("SET NX failed for %s: %s", key, exc)
            return LockOutcome.failed(_error_kind(exc), str(exc))

        if not was_set:
            self.logger.debug("Lock %s is held by another token", key)
            return LockOutcome.failed(ErrorKind.BACKEND_REJECTED, f"lock {key} is already held")

        self.logger.debug("Acquired %s for %ss", key, request.effective_ttl())
        return LockOutcome.granted(LockHandle(backend=self.backend, key=request.key, token=request.token))

    def release(self, handle: LockHandle) -> ReleaseOutcome:
        mismatch = self._check_handle(handle)
        if mismatch is not None:
            return mismatch
        if not handle.key or not handle.token:
            return ReleaseOutcome.failed(ErrorKind.INVALID_ARGUMENT, "lock key and token are required")
        if self._redis is None:
            return ReleaseOutcome.failed(ErrorKind.INVALID_ARGUMENT, "redis connection is required")

        key = self._full_key(handle.key)
        # release only if token matches
        try:
            count = int(self._redis.eval(RELEASE_SCRIPT, 1, key, handle.token))
        except redis_errors.RedisError as exc:
            self.logger.warning("Release script failed for %s: %s", key, exc)
            return ReleaseOutcome.failed(_error_kind(exc), str(exc))

        if count == 1:
            self.logger.debug("Released %s", key)
            return ReleaseOutcome.done(count)
        self.logger.info("Lock %s not released: token mismatch or already expired", key)
        return ReleaseOutcome.not_owner()
