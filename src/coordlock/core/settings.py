"""Runtime settings loader."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, HttpUrl, ValidationError, field_validator

from coordlock.utils.env import get_list_env, get_str_env


BackendName = Literal["redis", "zookeeper", "etcd"]


class RedisSettings(BaseModel):
    url: str = "redis://localhost:6379/0"
    key_prefix: str = ""
    socket_timeout: Optional[float] = Field(default=2.0, gt=0)


class ZooKeeperSettings(BaseModel):
    hosts: List[str] = Field(default_factory=lambda: ["127.0.0.1:2181"], min_length=1)
    root: str = "/coordlock"
    wait_timeout: float = Field(default=2.0, gt=0)  # how long a queued acquire waits for its turn
    connect_timeout: float = Field(default=10.0, gt=0)

    @field_validator("root")
    @classmethod
    def _root_below_slash(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith("/"):
            raise ValueError("root must be an absolute path other than \"/\"")
        return value


class EtcdSettings(BaseModel):
    endpoint: HttpUrl = Field(default="http://127.0.0.1:2379", validate_default=True)
    timeout: float = Field(default=2.0, gt=0)
    connect_timeout: float = Field(default=3.0, gt=0)
    lock_timeout: Optional[float] = Field(default=10.0, gt=0)  # server_lock requests block server-side


class LockSettings(BaseModel):
    backend: BackendName = "redis"
    redis: RedisSettings = Field(default_factory=RedisSettings)
    zookeeper: ZooKeeperSettings = Field(default_factory=ZooKeeperSettings)
    etcd: EtcdSettings = Field(default_factory=EtcdSettings)

    @classmethod
    def from_file(cls, path: Path) -> "LockSettings":
        data = yaml.safe_load(path.read_text()) or {}
        try:
            settings = cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid lock settings: {exc}") from exc
        return settings.with_env_overrides()

    @classmethod
    def from_env(cls) -> "LockSettings":
        return cls().with_env_overrides()

    def with_env_overrides(self) -> "LockSettings":
        """Return a copy with ``COORDLOCK_*`` environment variables applied."""
        data = self.model_dump(mode="json")
        backend = get_str_env("COORDLOCK_BACKEND")
        if backend:
            data["backend"] = backend
        redis_url = get_str_env("COORDLOCK_REDIS_URL")
        if redis_url:
            data["redis"]["url"] = redis_url
        zk_hosts = get_list_env("COORDLOCK_ZK_HOSTS")
        if zk_hosts:
            data["zookeeper"]["hosts"] = zk_hosts
        etcd_endpoint = get_str_env("COORDLOCK_ETCD_ENDPOINT")
        if etcd_endpoint:
            data["etcd"]["endpoint"] = etcd_endpoint
        try:
            return type(self).model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid lock settings from environment: {exc}") from exc
