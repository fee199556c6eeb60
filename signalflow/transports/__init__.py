"""Transports used to reach connector operation endpoints."""

from __future__ import annotations

from .channel import (
    ChannelFactory,
    ChannelState,
    JsonRpcChannel,
    RpcChannel,
)


def websocket_channel_factory(default_timeout: float = 60.0) -> ChannelFactory:
    """Factory opening a :class:`JsonRpcChannel` per URL."""

    def factory(url: str) -> RpcChannel:
        return JsonRpcChannel(url, default_timeout=default_timeout)

    return factory


__all__ = [
    "ChannelFactory",
    "ChannelState",
    "JsonRpcChannel",
    "RpcChannel",
    "websocket_channel_factory",
]
