"""
Gateway message types

Unified message and configuration models for the channel gateway.
Connectors convert platform-specific traffic to/from these types.
"""

import time
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WILDCARD = "*"


class ConnectorState(str, Enum):
    """Connector lifecycle state."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    LISTENING = "listening"
    STOPPED = "stopped"


# ==================== Channel configuration ====================


class ChannelConfig(BaseModel):
    """
    Configuration for a single channel.

    Immutable once loaded; owned by its connector instance.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Channel identifier, e.g. 'dingtalk'")
    platform: str = Field(..., description="Platform type: 'dingtalk' or 'wecom'")
    enabled: bool = True
    allow_list: FrozenSet[str] = Field(
        default_factory=frozenset,
        alias="allowed_users",
        description="Permitted sender ids; '*' admits everyone",
    )
    reply_timeout: float = Field(60.0, gt=0, description="Reply window (seconds)")

    @field_validator("allow_list", mode="before")
    @classmethod
    def _normalize_allow_list(cls, value):
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(str(item).strip() for item in value if str(item).strip())

    @property
    def allows_everyone(self) -> bool:
        return WILDCARD in self.allow_list


class DingTalkChannelConfig(ChannelConfig):
    """DingTalk Stream mode (outbound WebSocket, no public endpoint)."""
    platform: Literal["dingtalk"] = "dingtalk"
    client_id: str = Field(..., min_length=1, description="AppKey / Client ID")
    client_secret: str = Field(..., min_length=1, description="AppSecret / Client Secret")
    handshake_timeout: float = Field(10.0, gt=0)
    heartbeat_interval: float = Field(20.0, gt=0)
    heartbeat_timeout: float = Field(10.0, gt=0)
    backoff_initial: float = Field(1.0, gt=0)
    backoff_max: float = Field(60.0, gt=0)
    max_auth_retries: int = Field(5, ge=1)
    session_webhook_reply: bool = True

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "DingTalkChannelConfig":
        if self.backoff_max < self.backoff_initial:
            raise ValueError("backoff_max must be >= backoff_initial")
        return self


class WeComChannelConfig(ChannelConfig):
    """WeCom (Enterprise WeChat) callback mode (inbound HTTP endpoint)."""
    platform: Literal["wecom"] = "wecom"
    corp_id: str = Field(..., min_length=1, description="Enterprise corp id")
    secret: str = Field(..., min_length=1, description="Application secret")
    agent_id: str = Field(..., min_length=1, description="Application / bot agent id")
    token: str = Field(..., min_length=1, description="Callback verification token")
    encoding_aes_key: str = Field(..., description="43-char base64 EncodingAESKey")
    callback_path: str = "/wecom/callback"
    reply_timeout: float = Field(5.0, gt=0)
    shutdown_grace: float = Field(5.0, ge=0)
    encrypted_ack: bool = False
    signature_digest: Literal["sha1", "sha256"] = "sha1"

    @field_validator("agent_id", mode="before")
    @classmethod
    def _agent_id_to_str(cls, value):
        return str(value) if value is not None else value

    @field_validator("encoding_aes_key")
    @classmethod
    def _check_aes_key(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 43:
            raise ValueError("encoding_aes_key must be 43 characters long")
        return value

    @field_validator("callback_path")
    @classmethod
    def _check_callback_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("callback_path must start with '/'")
        return value


AnyChannelConfig = Union[DingTalkChannelConfig, WeComChannelConfig]


# ==================== Tokens ====================


class AccessToken(BaseModel):
    """Time-bounded platform credential, cached per channel."""
    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: float = Field(..., description="Expiry (epoch seconds)")
    channel_id: str

    def is_valid(self, now: Optional[float] = None, margin: float = 0.0) -> bool:
        """True if the token stays valid for at least ``margin`` more seconds."""
        current = time.time() if now is None else now
        return self.expires_at - margin > current


# ==================== Messages ====================


class InboundMessage(BaseModel):
    """
    Unified inbound message from any channel.

    Built by a connector only after decode/decrypt/verify succeeded and the
    sender passed the channel's allow-list.
    """
    model_config = ConfigDict(frozen=True)

    channel_id: str
    sender_id: str
    sender_name: Optional[str] = None
    conversation_id: str
    conversation_type: Literal["dm", "group"] = "dm"
    text: str
    correlation_id: str = Field(..., description="Platform message id, used to route the reply")
    received_at: float = Field(default_factory=time.time)
    reply_webhook: Optional[str] = Field(
        None, description="Per-session reply URL supplied by the platform, if any"
    )


class OutboundMessage(BaseModel):
    """Reply addressed back to the originating channel and conversation."""
    model_config = ConfigDict(frozen=True)

    channel_id: str
    conversation_id: str
    content: str
    correlation_id: str
    recipient_id: Optional[str] = Field(None, description="Platform user id of the original sender")
    reply_webhook: Optional[str] = None


class Ack(BaseModel):
    """Synchronous acknowledgment returned to a webhook platform."""
    body: str = ""
    media_type: str = "text/plain"

    @classmethod
    def empty(cls) -> "Ack":
        return cls()


class ChannelHealth(BaseModel):
    """Health snapshot / doctor result for one channel."""
    channel_id: str
    platform: str
    state: ConnectorState
    healthy: bool
    detail: str = ""
    consecutive_failures: int = 0
    last_error: Optional[str] = None


# ==================== Gateway configuration ====================


class EngineSettings(BaseModel):
    """AI engine collaborator settings."""
    url: Optional[str] = Field(None, description="HTTP endpoint of the local assistant")
    factory: Optional[str] = Field(None, description="'package.module:callable' returning an engine")
    timeout: float = Field(120.0, gt=0)


class ServerSettings(BaseModel):
    """HTTP listener settings (webhook callbacks + status API)."""
    host: str = "0.0.0.0"
    port: int = 8080


class GatewayConfig(BaseModel):
    """Full gateway configuration."""
    channels: Dict[str, ChannelConfig] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(
        default_factory=dict, description="Channel id -> configuration error"
    )
    engine: EngineSettings = Field(default_factory=EngineSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    max_concurrency_per_channel: int = Field(2, ge=1)
    fallback_reply: Optional[str] = None

    def enabled_channels(self) -> List[ChannelConfig]:
        return [cfg for cfg in self.channels.values() if cfg.enabled]
