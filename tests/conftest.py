from __future__ import annotations

import base64
import json
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from kazoo.exceptions import NodeExistsError, NoNodeError
from kazoo.protocol.states import EventType, KeeperState, WatchedEvent, ZnodeStat

from coordlock.services.etcd_gateway import EtcdGateway


class FakeRedis:
    """In-memory stand-in for the parts of redis-py the KV engine uses."""

    def __init__(self) -> None:
        self.now = 0.0
        self.calls: List[str] = []
        self.last_ex: Optional[int] = None
        self._data: Dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.now:
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: str, *, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        with self._lock:
            self.calls.append("set")
            self.last_ex = ex
            if nx and self._live(key) is not None:
                return None
            self._data[key] = (value, self.now + ex if ex else None)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self.calls.append("get")
            return self._live(key)

    def eval(self, script: str, numkeys: int, *keys_and_args: str) -> int:
        # Executes the compare-and-delete release script atomically.
        assert "redis.call('del'" in script
        assert numkeys == 1
        key, token = keys_and_args
        with self._lock:
            self.calls.append("eval")
            if self._live(key) == token:
                del self._data[key]
                return 1
            return 0


class BrokenRedis:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    def set(self, *args: Any, **kwargs: Any) -> None:
        raise self._exc

    def eval(self, *args: Any, **kwargs: Any) -> None:
        raise self._exc


def _stat() -> ZnodeStat:
    return ZnodeStat(0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)


class FakeKazoo:
    """Single-session ZooKeeper stand-in with sequential nodes and one-shot watches.

    Watches fire synchronously from the thread that deleted or changed the
    node, like kazoo's callback thread would.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, bytes] = {}
        self.fail_create: Dict[str, Exception] = {}
        self.fail_delete: Optional[Exception] = None
        self.vanish_before_watch: set[str] = set()
        # Paths another session creates first: create() stores the node, then loses with NodeExistsError.
        self.created_concurrently: set[str] = set()
        self._sequence: Dict[str, int] = defaultdict(int)
        self._watches: Dict[str, List[Callable[[WatchedEvent], None]]] = defaultdict(list)
        self._lock = threading.RLock()

    def exists(self, path: str, watch: Any = None) -> Optional[ZnodeStat]:
        with self._lock:
            return _stat() if path in self.nodes else None

    def create(
        self,
        path: str,
        value: bytes = b"",
        acl: Any = None,
        ephemeral: bool = False,
        sequence: bool = False,
        makepath: bool = False,
    ) -> str:
        with self._lock:
            for prefix, exc in self.fail_create.items():
                if path.startswith(prefix):
                    raise exc
            if path in self.created_concurrently:
                self.created_concurrently.discard(path)
                self.nodes[path] = b"other-session"
                raise NodeExistsError()
            parent = path.rsplit("/", 1)[0]
            if parent and parent not in self.nodes and not makepath:
                raise NoNodeError()
            if sequence:
                path = f"{path}{self._sequence[parent]:010d}"
                self._sequence[parent] += 1
            if path in self.nodes:
                raise NodeExistsError()
            self.nodes[path] = value
            return path

    def get_children(self, path: str) -> List[str]:
        with self._lock:
            if path not in self.nodes:
                raise NoNodeError()
            prefix = path.rstrip("/") + "/"
            return [p[len(prefix):] for p in self.nodes if p.startswith(prefix) and "/" not in p[len(prefix):]]

    def get(self, path: str, watch: Optional[Callable[[WatchedEvent], None]] = None) -> tuple[bytes, ZnodeStat]:
        if path in self.vanish_before_watch:
            self.vanish_before_watch.discard(path)
            self.delete(path)
        with self._lock:
            if path not in self.nodes:
                raise NoNodeError()
            if watch is not None:
                self._watches[path].append(watch)
            return self.nodes[path], _stat()

    def delete(self, path: str, version: int = -1, recursive: bool = False) -> bool:
        if self.fail_delete is not None:
            raise self.fail_delete
        with self._lock:
            if path not in self.nodes:
                raise NoNodeError()
            del self.nodes[path]
            watches = self._watches.pop(path, [])
        event = WatchedEvent(EventType.DELETED, KeeperState.CONNECTED, path)
        for watch in watches:
            watch(event)
        return True


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class FakeEtcd:
    """etcd v3 JSON gateway served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.revision = 1
        self.leases: Dict[int, int] = {}
        self.kv: Dict[str, tuple[str, int]] = {}
        self.locks: Dict[str, tuple[str, int]] = {}
        self.requests: List[tuple[str, Dict[str, Any]]] = []
        self.overrides: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def header(self) -> Dict[str, str]:
        return {"cluster_id": "14841639068965178418", "member_id": "10276657743932975437", "revision": str(self.revision), "raft_term": "2"}

    def error(self, status: int, message: str, code: int) -> httpx.Response:
        return httpx.Response(status, json={"error": message, "message": message, "code": code})

    def expire(self, lease_id: int) -> None:
        self.leases.pop(lease_id, None)
        self.kv = {k: v for k, v in self.kv.items() if v[1] != lease_id}
        self.locks = {k: v for k, v in self.locks.items() if v[1] != lease_id}

    def paths(self) -> List[str]:
        return [path for path, _ in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content or b"{}")
        self.requests.append((path, body))
        if path in self.overrides:
            return self.overrides[path](request)
        handler = {
            "/v3/lease/grant": self._grant,
            "/v3/kv/put": self._put,
            "/v3/lease/revoke": self._revoke,
            "/v3/lock/lock": self._lock,
            "/v3/lock/unlock": self._unlock,
        }[path]
        return handler(request, body)

    def _grant(self, request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        lease_id, ttl = int(body["ID"]), int(body["TTL"])
        if lease_id in self.leases:
            return self.error(400, "etcdserver: lease already exists", 9)
        self.leases[lease_id] = ttl
        return httpx.Response(200, json={"header": self.header(), "ID": str(lease_id), "TTL": str(ttl)})

    def _put(self, request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        lease_id = int(body.get("lease", 0))
        if lease_id and lease_id not in self.leases:
            return self.error(404, "etcdserver: requested lease not found", 5)
        self.revision += 1
        self.kv[body["key"]] = (body["value"], lease_id)
        return httpx.Response(200, json={"header": self.header()})

    def _revoke(self, request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        lease_id = int(body["ID"])
        if lease_id not in self.leases:
            return self.error(404, "etcdserver: requested lease not found", 5)
        self.expire(lease_id)
        self.revision += 1
        return httpx.Response(200, json={"header": self.header()})

    def _lock(self, request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        name, lease_id = body["name"], int(body["lease"])
        if lease_id not in self.leases:
            return self.error(404, "etcdserver: requested lease not found", 5)
        if name in self.locks:
            # The real server keeps the request open until the holder leaves.
            raise httpx.ReadTimeout("timed out waiting for lock", request=request)
        self.revision += 1
        lock_key = b64(f"{base64.b64decode(name).decode()}/{lease_id:x}")
        self.locks[name] = (lock_key, lease_id)
        return httpx.Response(200, json={"header": self.header(), "key": lock_key})

    def _unlock(self, request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        self.locks = {k: v for k, v in self.locks.items() if v[0] != body["key"]}
        self.revision += 1
        return httpx.Response(200, json={"header": self.header()})


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_kazoo() -> FakeKazoo:
    return FakeKazoo()


@pytest.fixture
def fake_etcd() -> FakeEtcd:
    return FakeEtcd()


@pytest.fixture
def gateway(fake_etcd: FakeEtcd) -> EtcdGateway:
    gw = EtcdGateway("http://etcd.test:2379/", transport=httpx.MockTransport(fake_etcd))
    yield gw
    gw.close()
