"""HTTP transport for the etcd v3 JSON gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx


DEFAULT_TIMEOUT = 2.0
DEFAULT_CONNECT_TIMEOUT = 3.0


@dataclass(slots=True)
class GatewayReply:
    """Normalized result of one gateway call.

    ``error`` is set only when no usable reply arrived (connection failure,
    timeout, undecodable body). A decoded error envelope from etcd leaves
    ``error`` empty and shows up as a payload without ``header``.
    """

    status_code: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    # The server accepted the request but did not answer in time.
    timed_out: bool = False

    @property
    def transport_failed(self) -> bool:
        return self.error is not None

    @property
    def ok(self) -> bool:
        # etcd signals success structurally, not through the HTTP status.
        return not self.transport_failed and "header" in self.payload

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error
        for name in ("message", "error"):
            value = self.payload.get(name)
            if value:
                return str(value)
        return f"unexpected reply (HTTP {self.status_code})"


class EtcdGateway:
    """Posts JSON requests to ``<endpoint>/v3/...`` and decodes the replies."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._client = httpx.Client(
            base_url=self.endpoint,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )

    def post(self, path: str, body: Dict[str, Any], *, timeout: Optional[float] = None) -> GatewayReply:
        request_timeout = None
        if timeout is not None:
            request_timeout = httpx.Timeout(timeout, connect=self.connect_timeout)
        try:
            if request_timeout is None:
                response = self._client.post(path, json=body)
            else:
                response = self._client.post(path, json=body, timeout=request_timeout)
        except httpx.ReadTimeout as exc:
            return GatewayReply(error=f"{type(exc).__name__}: {exc}", timed_out=True)
        except httpx.HTTPError as exc:
            return GatewayReply(error=f"{type(exc).__name__}: {exc}")

        try:
            payload = response.json()
        except ValueError:
            return GatewayReply(
                status_code=response.status_code,
                error=f"undecodable reply (HTTP {response.status_code})",
            )
        if not isinstance(payload, dict):
            return GatewayReply(
                status_code=response.status_code,
                error=f"unexpected reply shape (HTTP {response.status_code})",
            )
        return GatewayReply(status_code=response.status_code, payload=payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "EtcdGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
