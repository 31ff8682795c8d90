"""Abstract interface shared by the lock engines."""

from __future__ import annotations

import abc
from contextlib import contextmanager
from typing import Iterator

from .models import ErrorKind, LockHandle, LockOutcome, LockRequest, ReleaseOutcome


class LockEngine(abc.ABC):
    """One coordination backend exposed as acquire/release.

    Both calls are single-attempt and synchronous. Backend failures are
    reported through the returned outcome, never raised.
    """

    backend: str = ""

    @abc.abstractmethod
    def acquire(self, request: LockRequest) -> LockOutcome:  # pragma: no cover - interface
        """Try to take the lock described by ``request``."""
        raise NotImplementedError

    @abc.abstractmethod
    def release(self, handle: LockHandle) -> ReleaseOutcome:  # pragma: no cover - interface
        """Give back a lock previously returned by :meth:`acquire`."""
        raise NotImplementedError

    @contextmanager
    def lock(self, request: LockRequest) -> Iterator[LockOutcome]:
        """Acquire for the duration of a ``with`` block.

        The outcome is yielded whether or not the lock was taken; release
        only happens when it was.
        """
        outcome = self.acquire(request)
        try:
            yield outcome
        finally:
            if outcome.acquired and outcome.handle is not None:
                self.release(outcome.handle)

    def _check_request(self, request: LockRequest) -> LockOutcome | None:
        if not request.key:
            return LockOutcome.failed(ErrorKind.INVALID_ARGUMENT, "lock key is required")
        if not request.token:
            return LockOutcome.failed(ErrorKind.INVALID_ARGUMENT, "lock token is required")
        if request.ttl < 0:
            return LockOutcome.failed(ErrorKind.INVALID_ARGUMENT, f"ttl must be positive, got {request.ttl}")
        return None

    def _check_handle(self, handle: LockHandle) -> ReleaseOutcome | None:
        if handle.backend != self.backend:
            return ReleaseOutcome.failed(
                ErrorKind.INVALID_ARGUMENT,
                f"handle belongs to backend {handle.backend!r}, not {self.backend!r}",
            )
        return None
