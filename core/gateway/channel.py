"""
Connector protocol

Defines the capability set every platform connector provides. The
dispatcher and the channel manager depend only on this interface.
"""

from typing import Awaitable, Callable, Protocol, runtime_checkable

from core.gateway.types import ChannelConfig, ChannelHealth, InboundMessage, OutboundMessage


# Callback type: called when a connector accepts an inbound message
OnMessageCallback = Callable[[InboundMessage], Awaitable[None]]


@runtime_checkable
class Connector(Protocol):
    """
    Connector protocol.

    Each platform (DingTalk, WeCom) implements this interface to:
    - Establish and maintain its communication path
    - Hand accepted inbound messages to the dispatcher
    - Send replies back to the platform
    - Report health
    """

    @property
    def id(self) -> str:
        """Channel identifier, e.g. 'dingtalk', 'wecom'."""
        ...

    @property
    def platform(self) -> str:
        ...

    @property
    def config(self) -> ChannelConfig:
        ...

    async def start(self, on_message: OnMessageCallback) -> None:
        """
        Start the connector.

        Streaming connectors run their reconnect loop until stop() is called;
        webhook connectors mark themselves as accepting requests and return.

        Args:
            on_message: callback invoked for each accepted inbound message
        """
        ...

    async def stop(self) -> None:
        """Stop the connector gracefully."""
        ...

    async def send(self, message: OutboundMessage) -> None:
        """
        Deliver one reply to the platform.

        Raises:
            TransportError: no usable connection / upstream failure
            ReplyTimeoutError: reply window exceeded
            AuthError: credential rejected
        """
        ...

    def health(self) -> ChannelHealth:
        """Return the current health snapshot."""
        ...

    async def check(self) -> ChannelHealth:
        """Active credential / connectivity probe (used by doctor)."""
        ...
