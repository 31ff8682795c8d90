"""ZooKeeper-based fair lock built from ephemeral sequential nodes.

Every attempt creates ``<root>/<key>NNNNNNNNNN``. The attempt holding the
lowest sequence number for its key owns the lock; every other attempt
watches the node immediately before its own and waits until that node
goes away. Grants are therefore strictly FIFO by creation order.
"""

from __future__ import annotations

import enum
import threading
import time
from typing import Any, List, Optional

from kazoo.client import KazooClient
from kazoo.exceptions import (
    ConnectionLoss,
    KazooException,
    NodeExistsError,
    NoNodeError,
    SessionExpiredError,
)
from kazoo.handlers.threading import KazooTimeoutError

from coordlock.utils.logging import get_logger

from .locks import LockEngine
from .models import ErrorKind, LockHandle, LockOutcome, LockRequest, ReleaseOutcome


DEFAULT_ROOT = "/coordlock"
# 20 checks of 100ms each in the classic polling formulation.
DEFAULT_WAIT_TIMEOUT = 2.0

_SEQUENCE_DIGITS = 10


class AttemptState(enum.Enum):
    INIT = "init"
    NODE_CREATED = "node_created"
    WAITING = "waiting"
    GRANTED = "granted"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PendingWait:
    """Notification state owned by exactly one acquire attempt.

    The watch callback registered for the attempt's predecessor is bound to
    this object, so attempts running in parallel never share a flag. Another
    thread may call :meth:`cancel` to stop a blocked acquire early.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._notified = False
        self._cancelled = False
        self.state = AttemptState.INIT
        self.node_path: Optional[str] = None
        self.last_event: Any = None

    def notify(self, event: Any = None) -> None:
        """Watch callback: kazoo passes a ``WatchedEvent(type, state, path)``."""
        with self._cond:
            self._notified = True
            self.last_event = event
            self._cond.notify_all()

    def cancel(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def reset(self) -> None:
        """Clear the outcome of a finished attempt so the waiter can be reused."""
        with self._cond:
            self._notified = False
            self._cancelled = False
            self.state = AttemptState.INIT
            self.node_path = None
            self.last_event = None

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    def wait(self, timeout: float) -> bool:
        """Block until notified, cancelled or ``timeout`` elapses.

        Returns True only for a notification; the flag is consumed so the
        next call waits for a fresh event.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._notified or self._cancelled, timeout)
            if self._cancelled:
                return False
            fired = self._notified
            self._notified = False
            return fired


def _split_sequence(name: str) -> tuple[str, int] | None:
    if len(name) <= _SEQUENCE_DIGITS:
        return None
    prefix, suffix = name[:-_SEQUENCE_DIGITS], name[-_SEQUENCE_DIGITS:]
    if not suffix.isdigit():
        return None
    return prefix, int(suffix)


def _error_kind(exc: Exception) -> ErrorKind:
    if isinstance(exc, (ConnectionLoss, SessionExpiredError, KazooTimeoutError)):
        return ErrorKind.BACKEND_UNAVAILABLE
    return ErrorKind.BACKEND_REJECTED


def _normalize_root(root: str) -> str:
    normalized = root.rstrip("/")
    if not normalized.startswith("/"):
        raise ValueError(f"lock root must be an absolute node path below \"/\", got {root!r}")
    return normalized


class ZooKeeperLockEngine(LockEngine):
    """Fair lock over a started :class:`kazoo.client.KazooClient`.

    ``ttl`` is ignored: nodes live as long as the client session. A node
    whose attempt timed out is left in place and must be released by the
    caller through the handle returned with the failure.
    """

    backend = "zookeeper"

    def __init__(
        self,
        client: KazooClient,
        *,
        root: str = DEFAULT_ROOT,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> None:
        self._client = client
        self._root = _normalize_root(root)
        self._wait_timeout = wait_timeout
        self.logger = get_logger("ZooKeeperLockEngine")

    @property
    def root(self) -> str:
        return self._root

    def acquire(self, request: LockRequest, waiter: Optional[PendingWait] = None) -> LockOutcome:
        if waiter is None:
            waiter = PendingWait()
        elif waiter.state is not AttemptState.INIT:
            # A cancel issued before the first attempt still applies; later ones do not carry over.
            waiter.reset()
        invalid = self._check_request(request)
        if invalid is not None:
            waiter.state = AttemptState.FAILED
            return invalid
        if "/" in request.key:
            waiter.state = AttemptState.FAILED
            return LockOutcome.failed(ErrorKind.INVALID_ARGUMENT, f"lock key {request.key!r} must not contain '/'")

        data = request.token.encode("utf-8")
        try:
            self._ensure_root(data)
        except (KazooException, KazooTimeoutError) as exc:
            self.logger.warning("Cannot create lock root %s: %s", self._root, exc)
            waiter.state = AttemptState.FAILED
            return LockOutcome.failed(ErrorKind.ROOT_CREATE_FAILED, f"create root node {self._root} failed: {exc}")

        try:
            node_path = self._client.create(f"{self._root}/{request.key}", data, ephemeral=True, sequence=True)
        except (KazooException, KazooTimeoutError) as exc:
            self.logger.warning("Cannot create lock node for %s: %s", request.key, exc)
            waiter.state = AttemptState.FAILED
            return LockOutcome.failed(ErrorKind.NODE_CREATE_FAILED, f"create sequential node failed: {exc}")

        waiter.node_path = node_path
        waiter.state = AttemptState.NODE_CREATED
        handle = LockHandle(backend=self.backend, key=request.key, token=request.token, node_path=node_path)
        self.logger.debug("Created %s", node_path)

        try:
            return self._wait_for_turn(request.key, handle, waiter)
        except (KazooException, KazooTimeoutError) as exc:
            self.logger.warning("Lock wait on %s aborted: %s", node_path, exc)
            waiter.state = AttemptState.FAILED
            return LockOutcome.failed(_error_kind(exc), str(exc), handle=handle)

    def release(self, handle: LockHandle) -> ReleaseOutcome:
        mismatch = self._check_handle(handle)
        if mismatch is not None:
            return mismatch
        if not handle.node_path:
            return ReleaseOutcome.failed(ErrorKind.INVALID_ARGUMENT, "node path is required")

        try:
            self._client.delete(handle.node_path)
        except NoNodeError:
            self.logger.debug("Node %s already gone", handle.node_path)
            return ReleaseOutcome.already_released(f"node {handle.node_path} does not exist")
        except (KazooException, KazooTimeoutError) as exc:
            self.logger.warning("Cannot delete %s: %s", handle.node_path, exc)
            return ReleaseOutcome.failed(_error_kind(exc), str(exc))
        self.logger.debug("Deleted %s", handle.node_path)
        return ReleaseOutcome.done()

    def _ensure_root(self, data: bytes) -> None:
        if self._client.exists(self._root) is not None:
            return
        try:
            self._client.create(self._root, data, makepath=True)
        except NodeExistsError:
            pass

    def _queue(self, key: str) -> List[str]:
        """Paths of every live attempt on ``key``, oldest first."""
        entries = []
        for name in self._client.get_children(self._root):
            parsed = _split_sequence(name)
            if parsed is None or parsed[0] != key:
                continue
            entries.append((parsed[1], f"{self._root}/{name}"))
        entries.sort()
        return [path for _, path in entries]

    def _wait_for_turn(self, key: str, handle: LockHandle, waiter: PendingWait) -> LockOutcome:
        node_path = handle.node_path
        deadline = time.monotonic() + self._wait_timeout
        while True:
            queue = self._queue(key)
            if node_path not in queue:
                waiter.state = AttemptState.FAILED
                return LockOutcome.failed(
                    ErrorKind.BACKEND_REJECTED, f"lock node {node_path} disappeared while waiting", handle=handle
                )
            position = queue.index(node_path)
            if position == 0:
                waiter.state = AttemptState.GRANTED
                self.logger.debug("Granted %s", node_path)
                return LockOutcome.granted(handle)

            predecessor = queue[position - 1]
            try:
                self._client.get(predecessor, watch=waiter.notify)
            except NoNodeError:
                # Predecessor went away before the watch was armed.
                continue

            waiter.state = AttemptState.WAITING
            self.logger.debug("%s waiting on %s", node_path, predecessor)
            remaining = deadline - time.monotonic()
            if remaining > 0 and waiter.wait(remaining):
                continue

            if waiter.cancelled:
                waiter.state = AttemptState.CANCELLED
                return LockOutcome.failed(ErrorKind.CANCELLED, f"wait for {key} cancelled", handle=handle)
            waiter.state = AttemptState.TIMED_OUT
            self.logger.info("Timed out after %.1fs waiting for %s; node %s left for release", self._wait_timeout, key, node_path)
            return LockOutcome.failed(
                ErrorKind.TIMEOUT, f"lock {key} not granted within {self._wait_timeout}s", handle=handle
            )
