"""etcd-based distributed lock built on leases.

Two modes are offered, and a lock must be released in the mode it was
taken in:

``advisory``
    Grant a lease and put ``key -> token`` under it. etcd does not stop a
    second holder from writing the same key under its own lease; the last
    write wins. Treat this as best-effort coordination: a caller that needs
    exclusion has to compare the returned revision with the key's current
    one itself.

``server_lock``
    Grant a lease and call etcd's lock service with it. etcd enforces
    exclusivity and holds the request open until the lock is granted. A
    request still open after ``lock_timeout`` seconds is reported as
    ``backend_rejected``: the lock is held by another lease.
"""

from __future__ import annotations

import base64
from typing import Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from coordlock.services.etcd_gateway import EtcdGateway, GatewayReply
from coordlock.utils.logging import get_logger

from .locks import LockEngine
from .models import ErrorKind, LockHandle, LockMode, LockOutcome, LockRequest, ReleaseOutcome


LEASE_GRANT_PATH = "/v3/lease/grant"
LEASE_REVOKE_PATH = "/v3/lease/revoke"
KV_PUT_PATH = "/v3/kv/put"
LOCK_PATH = "/v3/lock/lock"
UNLOCK_PATH = "/v3/lock/unlock"

_LEASE_NOT_FOUND = "lease not found"

DEFAULT_LOCK_TIMEOUT = 10.0

ReplyT = TypeVar("ReplyT", bound=BaseModel)


class ResponseHeader(BaseModel):
    """Common header of every successful reply; numbers arrive as strings."""

    cluster_id: int = 0
    member_id: int = 0
    revision: int = 0
    raft_term: int = 0


class LeaseGrantReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    header: ResponseHeader
    id: Optional[int] = Field(default=None, alias="ID")
    ttl: int = Field(default=0, alias="TTL")
    error: str = ""


class PutReply(BaseModel):
    header: ResponseHeader


class LockReply(BaseModel):
    header: ResponseHeader
    key: str


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class EtcdLockEngine(LockEngine):
    """Lease-backed lock talking to the etcd JSON gateway.

    The lease id is chosen by the caller (``LockRequest.lease_id``); granting
    an id that is already in use fails the acquire.
    """

    backend = "etcd"

    def __init__(self, gateway: EtcdGateway, *, lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT) -> None:
        self._gateway = gateway
        self._lock_timeout = lock_timeout
        self.logger = get_logger("EtcdLockEngine")

    def acquire(self, request: LockRequest) -> LockOutcome:
        invalid = self._check_request(request)
        if invalid is not None:
            return invalid
        if not request.lease_id or request.lease_id <= 0:
            return LockOutcome.failed(ErrorKind.INVALID_ARGUMENT, "a positive lease id is required")

        ttl = request.effective_ttl()
        lease_id = request.lease_id
        reply = self._gateway.post(LEASE_GRANT_PATH, {"TTL": str(ttl), "ID": str(lease_id)})
        if reply.transport_failed:
            return LockOutcome.failed(ErrorKind.BACKEND_UNAVAILABLE, f"lease grant: {reply.message}")
        grant = self._parse(reply, LeaseGrantReply)
        if grant is None or grant.error:
            message = grant.error if grant is not None else reply.message
            self.logger.warning("Lease %s not granted: %s", lease_id, message)
            return LockOutcome.failed(ErrorKind.LEASE_GRANT_FAILED, message)
        lease_id = grant.id or lease_id
        self.logger.debug("Granted lease %s for %ss", lease_id, grant.ttl or ttl)

        if request.mode is LockMode.SERVER_LOCK:
            outcome = self._server_lock(request, lease_id)
        else:
            outcome = self._advisory_put(request, lease_id)

        if not outcome.acquired:
            self._discard_lease(lease_id)
        return outcome

    def release(self, handle: LockHandle, mode: Union[LockMode, str, None] = None) -> ReleaseOutcome:
        mismatch = self._check_handle(handle)
        if mismatch is not None:
            return mismatch
        held_mode = handle.mode or LockMode.ADVISORY
        if mode is not None:
            try:
                mode = LockMode(mode)
            except ValueError:
                return ReleaseOutcome.failed(ErrorKind.INVALID_ARGUMENT, f"unknown lock mode {mode!r}")
        if mode is not None and mode != held_mode:
            return ReleaseOutcome.failed(
                ErrorKind.MODE_MISMATCH,
                f"lock was acquired in {held_mode.value} mode, release requested {mode.value}",
            )

        if held_mode is LockMode.SERVER_LOCK:
            return self._unlock(handle)
        return self._revoke(handle)

    def _advisory_put(self, request: LockRequest, lease_id: int) -> LockOutcome:
        body = {"key": _b64(request.key), "value": _b64(request.token), "lease": str(lease_id)}
        reply = self._gateway.post(KV_PUT_PATH, body)
        if reply.transport_failed:
            return LockOutcome.failed(ErrorKind.BACKEND_UNAVAILABLE, f"kv put: {reply.message}")
        put = self._parse(reply, PutReply)
        if put is None:
            return LockOutcome.failed(ErrorKind.BACKEND_REJECTED, reply.message)
        self.logger.debug("Wrote advisory key %s at revision %s", request.key, put.header.revision)
        return LockOutcome.granted(
            LockHandle(
                backend=self.backend,
                key=request.key,
                token=request.token,
                mode=LockMode.ADVISORY,
                lease_id=lease_id,
                revision=put.header.revision,
            )
        )

    def _server_lock(self, request: LockRequest, lease_id: int) -> LockOutcome:
        body = {"name": _b64(request.key), "lease": str(lease_id)}
        reply = self._gateway.post(LOCK_PATH, body, timeout=self._lock_timeout)
        if reply.timed_out:
            # etcd holds the request open while another lease owns the lock.
            self.logger.info("Server lock %s still held by another lease after %ss", request.key, self._lock_timeout)
            return LockOutcome.failed(ErrorKind.BACKEND_REJECTED, f"lock {request.key} is held: {reply.message}")
        if reply.transport_failed:
            return LockOutcome.failed(ErrorKind.BACKEND_UNAVAILABLE, f"lock: {reply.message}")
        locked = self._parse(reply, LockReply)
        if locked is None:
            return LockOutcome.failed(ErrorKind.BACKEND_REJECTED, reply.message)
        self.logger.debug("Server lock %s held under lease %s", request.key, lease_id)
        return LockOutcome.granted(
            LockHandle(
                backend=self.backend,
                key=request.key,
                token=request.token,
                mode=LockMode.SERVER_LOCK,
                lease_id=lease_id,
                lock_key=locked.key,
                revision=locked.header.revision,
            )
        )

    def _revoke(self, handle: LockHandle) -> ReleaseOutcome:
        if not handle.lease_id:
            return ReleaseOutcome.failed(ErrorKind.INVALID_ARGUMENT, "lease id is required for advisory release")
        reply = self._gateway.post(LEASE_REVOKE_PATH, {"ID": str(handle.lease_id)})
        if reply.transport_failed:
            return ReleaseOutcome.failed(ErrorKind.BACKEND_UNAVAILABLE, reply.message)
        if reply.ok:
            self.logger.debug("Revoked lease %s", handle.lease_id)
            return ReleaseOutcome.done()
        if _LEASE_NOT_FOUND in reply.message.lower():
            self.logger.debug("Lease %s had already expired", handle.lease_id)
            return ReleaseOutcome.already_released(reply.message)
        self.logger.warning("Revoke of lease %s rejected: %s", handle.lease_id, reply.message)
        return ReleaseOutcome.failed(ErrorKind.BACKEND_REJECTED, reply.message)

    def _unlock(self, handle: LockHandle) -> ReleaseOutcome:
        if not handle.lock_key:
            return ReleaseOutcome.failed(ErrorKind.INVALID_ARGUMENT, "lock key is required for server lock release")
        reply = self._gateway.post(UNLOCK_PATH, {"key": handle.lock_key})
        if reply.transport_failed:
            return ReleaseOutcome.failed(ErrorKind.BACKEND_UNAVAILABLE, reply.message)
        if reply.ok:
            return ReleaseOutcome.done()
        if "not found" in reply.message.lower():
            return ReleaseOutcome.already_released(reply.message)
        self.logger.warning("Unlock of %s rejected: %s", handle.key, reply.message)
        return ReleaseOutcome.failed(ErrorKind.BACKEND_REJECTED, reply.message)

    def _discard_lease(self, lease_id: int) -> None:
        reply = self._gateway.post(LEASE_REVOKE_PATH, {"ID": str(lease_id)})
        if not reply.ok:
            self.logger.warning("Could not revoke unused lease %s: %s", lease_id, reply.message)

    def _parse(self, reply: GatewayReply, model: type[ReplyT]) -> Optional[ReplyT]:
        if not reply.ok:
            return None
        try:
            return model.model_validate(reply.payload)
        except ValidationError as exc:
            self.logger.warning("Malformed %s: %s", model.__name__, exc)
            return None
