"""Transports used by the lock engines."""

from .etcd_gateway import EtcdGateway, GatewayReply

__all__ = ["EtcdGateway", "GatewayReply"]
