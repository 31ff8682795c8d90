"""Lock contract, shared models and the backend engines."""

from .locks import LockEngine
from .models import (
    ErrorKind,
    LockError,
    LockHandle,
    LockMode,
    LockOutcome,
    LockRequest,
    ReleaseOutcome,
    ReleaseStatus,
)

__all__ = [
    "LockEngine",
    "ErrorKind",
    "LockError",
    "LockHandle",
    "LockMode",
    "LockOutcome",
    "LockRequest",
    "ReleaseOutcome",
    "ReleaseStatus",
]
