"""Mutual-exclusion locks over Redis, ZooKeeper and etcd behind one contract."""

from .core import (
    ErrorKind,
    LockEngine,
    LockError,
    LockHandle,
    LockMode,
    LockOutcome,
    LockRequest,
    ReleaseOutcome,
    ReleaseStatus,
)

__all__ = [
    "__version__",
    "ErrorKind",
    "LockEngine",
    "LockError",
    "LockHandle",
    "LockMode",
    "LockOutcome",
    "LockRequest",
    "ReleaseOutcome",
    "ReleaseStatus",
]

__version__ = "0.1.0"
