"""
Gateway error taxonomy

Every failure the gateway can report maps to one of these types.
Connectors recover TransportError / AuthError locally; SecurityError and
AuthorizationError are terminal for a single message; ConfigError is
terminal for a single channel.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway errors."""

    def __init__(self, message: str, channel_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.channel_id = channel_id


class ConfigError(GatewayError):
    """Missing or malformed channel configuration."""

    pass


class AuthError(GatewayError):
    """
    Credential rejected while obtaining or refreshing an access token.

    ``transient`` is True when the refresh failed for a network reason rather
    than a credential rejection; such failures are retried without limit.
    """

    def __init__(
        self,
        message: str,
        channel_id: Optional[str] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, channel_id)
        self.transient = transient


class TransportError(GatewayError):
    """Connection drop, socket error, or upstream server error."""

    pass


class SecurityError(GatewayError):
    """Signature mismatch or decryption failure on inbound traffic."""

    pass


class AuthorizationError(GatewayError):
    """Sender is not present in the channel's allow-list."""

    pass


class ReplyTimeoutError(GatewayError):
    """Reply not delivered within the platform's response window."""

    pass


class EngineError(GatewayError):
    """AI engine call failed or returned an unusable reply."""

    pass
