"""
Enterprise channel gateway

Connects a local AI assistant to enterprise chat platforms (DingTalk
Stream mode, WeCom callback mode) and normalizes their traffic into one
internal message stream.

Architecture:
    Connector (DingTalk stream / WeCom webhook)
        → access filter (allow-list)
            → Dispatcher (InboundMessage → ResponseEngine → reply)
                → delivery (chunking + send back through the connector)

Usage:
    from core.gateway import create_gateway

    gateway = await create_gateway(config)
    await gateway.start()    # Start all configured channels
    ...
    await gateway.stop()     # Graceful shutdown
"""

from core.gateway.channel import Connector
from core.gateway.dispatcher import Dispatcher
from core.gateway.engine import HttpResponseEngine, ResponseEngine, load_engine
from core.gateway.errors import (
    AuthError,
    AuthorizationError,
    ConfigError,
    EngineError,
    GatewayError,
    ReplyTimeoutError,
    SecurityError,
    TransportError,
)
from core.gateway.loader import Gateway, create_gateway, load_gateway_config
from core.gateway.manager import ChannelManager
from core.gateway.token_cache import TokenCache
from core.gateway.types import (
    ChannelConfig,
    ChannelHealth,
    ConnectorState,
    GatewayConfig,
    InboundMessage,
    OutboundMessage,
)

__all__ = [
    "AuthError",
    "AuthorizationError",
    "ChannelConfig",
    "ChannelHealth",
    "ChannelManager",
    "ConfigError",
    "Connector",
    "ConnectorState",
    "Dispatcher",
    "EngineError",
    "Gateway",
    "GatewayConfig",
    "GatewayError",
    "HttpResponseEngine",
    "InboundMessage",
    "OutboundMessage",
    "ReplyTimeoutError",
    "ResponseEngine",
    "SecurityError",
    "TokenCache",
    "TransportError",
    "create_gateway",
    "load_engine",
    "load_gateway_config",
]
