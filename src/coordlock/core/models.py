"""Data models shared by every lock engine."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


DEFAULT_TTL_SECONDS = 1


class LockMode(str, Enum):
    """How the lease engine binds a lock to its lease."""

    ADVISORY = "advisory"
    SERVER_LOCK = "server_lock"


class ErrorKind(str, Enum):
    """Failure categories reported by acquire/release."""

    INVALID_ARGUMENT = "invalid_argument"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    BACKEND_REJECTED = "backend_rejected"
    TIMEOUT = "timeout"
    MODE_MISMATCH = "mode_mismatch"
    CANCELLED = "cancelled"
    ROOT_CREATE_FAILED = "root_create_failed"
    NODE_CREATE_FAILED = "node_create_failed"
    LEASE_GRANT_FAILED = "lease_grant_failed"


class ReleaseStatus(str, Enum):
    RELEASED = "released"
    ALREADY_RELEASED = "already_released"
    NOT_OWNER = "not_owner"
    FAILED = "failed"


class LockError(BaseModel):
    """Failure reason with the backend's original diagnostic text."""

    kind: ErrorKind
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


class LockRequest(BaseModel):
    """Parameters of one acquire attempt.

    ``token`` should be unguessable and unique per holder; the default is a
    random uuid4. ``ttl`` is in seconds and 0 means the default of one
    second. ``mode`` and ``lease_id`` are only read by the lease engine.
    Values are validated by the engines, not here, so that a bad request
    yields an ``invalid_argument`` outcome rather than an exception.
    """

    key: str
    token: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ttl: int = DEFAULT_TTL_SECONDS
    mode: LockMode = LockMode.ADVISORY
    lease_id: Optional[int] = None

    def effective_ttl(self) -> int:
        return self.ttl or DEFAULT_TTL_SECONDS


class LockHandle(BaseModel):
    """Everything a backend needs to release a lock later."""

    backend: str
    key: str
    token: Optional[str] = None
    mode: Optional[LockMode] = None
    node_path: Optional[str] = None
    lease_id: Optional[int] = None
    lock_key: Optional[str] = None
    revision: Optional[int] = None


class LockOutcome(BaseModel):
    acquired: bool
    error: Optional[LockError] = None
    handle: Optional[LockHandle] = None

    @classmethod
    def granted(cls, handle: LockHandle) -> "LockOutcome":
        return cls(acquired=True, handle=handle)

    @classmethod
    def failed(
        cls, kind: ErrorKind, message: str = "", *, handle: Optional[LockHandle] = None
    ) -> "LockOutcome":
        return cls(acquired=False, error=LockError(kind=kind, message=message), handle=handle)


class ReleaseOutcome(BaseModel):
    """Result of a release call.

    ``released`` is true for both ``released`` and ``already_released`` so
    callers that only care about "the lock is no longer mine" can test one
    flag; ``count`` is the number of keys/nodes the call actually removed.
    """

    released: bool
    status: ReleaseStatus
    count: int = 0
    error: Optional[LockError] = None
    detail: Optional[str] = None

    @classmethod
    def done(cls, count: int = 1) -> "ReleaseOutcome":
        return cls(released=True, status=ReleaseStatus.RELEASED, count=count)

    @classmethod
    def already_released(cls, message: str = "") -> "ReleaseOutcome":
        return cls(released=True, status=ReleaseStatus.ALREADY_RELEASED, detail=message or None)

    @classmethod
    def not_owner(cls) -> "ReleaseOutcome":
        return cls(released=False, status=ReleaseStatus.NOT_OWNER)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str = "") -> "ReleaseOutcome":
        return cls(
            released=False,
            status=ReleaseStatus.FAILED,
            error=LockError(kind=kind, message=message),
        )
