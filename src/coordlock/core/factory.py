"""Build a lock engine and its backend client from settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from coordlock.utils.logging import get_logger

from .locks import LockEngine
from .settings import BackendName, LockSettings


logger = get_logger("EngineFactory")


@dataclass(slots=True)
class EngineBundle:
    backend: str
    engine: LockEngine
    close: Callable[[], None]

    def __enter__(self) -> LockEngine:
        return self.engine

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_engine(settings: LockSettings, backend: Optional[BackendName] = None) -> EngineBundle:
    """Connect to the selected backend and wrap it in its engine.

    Connection problems while building the client (e.g. ZooKeeper not
    reachable within ``connect_timeout``) raise; they are setup failures,
    not lock outcomes.
    """
    name = backend or settings.backend
    logger.info("Building %s lock engine", name)

    if name == "redis":
        from redis import Redis

        from .locks_redis import RedisLockEngine

        redis = Redis.from_url(
            settings.redis.url,
            socket_timeout=settings.redis.socket_timeout,
            decode_responses=True,
        )
        engine = RedisLockEngine(redis, key_prefix=settings.redis.key_prefix)
        return EngineBundle(backend=name, engine=engine, close=redis.close)

    if name == "zookeeper":
        from kazoo.client import KazooClient

        from .locks_zookeeper import ZooKeeperLockEngine

        client = KazooClient(hosts=",".join(settings.zookeeper.hosts))
        client.start(timeout=settings.zookeeper.connect_timeout)

        def _close() -> None:
            client.stop()
            client.close()

        engine = ZooKeeperLockEngine(
            client,
            root=settings.zookeeper.root,
            wait_timeout=settings.zookeeper.wait_timeout,
        )
        return EngineBundle(backend=name, engine=engine, close=_close)

    if name == "etcd":
        from coordlock.services.etcd_gateway import EtcdGateway

        from .locks_etcd import EtcdLockEngine

        gateway = EtcdGateway(
            str(settings.etcd.endpoint),
            timeout=settings.etcd.timeout,
            connect_timeout=settings.etcd.connect_timeout,
        )
        engine = EtcdLockEngine(gateway, lock_timeout=settings.etcd.lock_timeout)
        return EngineBundle(backend=name, engine=engine, close=gateway.close)

    raise ValueError(f"Unknown lock backend: {name!r}")
