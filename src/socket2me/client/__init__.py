"""Tunnel client."""

from socket2me.client.connection import Connection
from socket2me.client.forwarder import ProxyConfig, RequestForwarder
from socket2me.client.heartbeat import HeartbeatTask
from socket2me.client.session import SessionState, TunnelSession, next_backoff

__all__ = [
    "Connection",
    "HeartbeatTask",
    "ProxyConfig",
    "RequestForwarder",
    "SessionState",
    "TunnelSession",
    "next_backoff",
]
