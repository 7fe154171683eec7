"""
DingTalk Stream mode API

REST client (token, connection handshake, session webhook) plus the
WebSocket frame codec used by the streaming connector.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import httpx

from logger import get_logger

from core.gateway.errors import AuthError, TransportError
from core.gateway.types import AccessToken
from infra.resilience import with_retry

logger = get_logger("gateway.channels.dingtalk_api")

TOKEN_URL = "https://oapi.dingtalk.com/gettoken"
OPEN_CONNECTION_URL = "https://api.dingtalk.com/v1.0/gateway/connections/open"

BOT_MESSAGE_TOPIC = "/v1.0/im/bot/messages/get"
USER_AGENT = "channel-gateway/0.1.0"

DEFAULT_TOKEN_TTL = 7200

# Frame types
FRAME_SYSTEM = "SYSTEM"
FRAME_EVENT = "EVENT"
FRAME_CALLBACK = "CALLBACK"
FRAME_CHAT = "chat"

TOPIC_PING = "ping"
TOPIC_DISCONNECT = "disconnect"


@dataclass(frozen=True)
class StreamEndpoint:
    """Result of the connection handshake."""
    endpoint: str
    ticket: str

    @property
    def url(self) -> str:
        sep = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{sep}ticket={self.ticket}"


# ==================== Frames ====================


@dataclass
class StreamFrame:
    """Decoded inbound WebSocket frame."""
    type: str
    message_id: str
    topic: str = ""
    data: Any = None
    spec_version: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_chat(self) -> bool:
        return self.type.upper() == FRAME_CALLBACK or self.type.lower() == FRAME_CHAT

    def payload(self) -> Dict[str, Any]:
        """``data`` as a dict; the platform sends it as a JSON string."""
        if isinstance(self.data, dict):
            return self.data
        if isinstance(self.data, (str, bytes)) and self.data:
            decoded = json.loads(self.data)
            if not isinstance(decoded, dict):
                raise ValueError("Frame data is not a JSON object")
            return decoded
        return {}


def parse_frame(raw: Union[str, bytes]) -> StreamFrame:
    """
    Decode one WebSocket text frame.

    Accepts both ``messageId`` and ``message_id`` header spellings.

    Raises:
        ValueError: not JSON, or missing type / message id
    """
    try:
        obj = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ValueError("Frame is not a JSON object")

    frame_type = obj.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise ValueError("Frame has no type")

    headers = obj.get("headers") or {}
    if not isinstance(headers, dict):
        raise ValueError("Frame headers must be an object")

    message_id = headers.get("messageId") or headers.get("message_id")
    if not message_id:
        raise ValueError("Frame has no message id")

    return StreamFrame(
        type=frame_type,
        message_id=str(message_id),
        topic=str(headers.get("topic") or ""),
        data=obj.get("data"),
        spec_version=obj.get("specVersion"),
        headers=headers,
    )


def _encode_data(data: Any) -> str:
    if isinstance(data, str):
        return data
    return json.dumps(data if data is not None else {}, ensure_ascii=False)


def build_ack_frame(message_id: str, data: Any = None, code: int = 200, message: str = "OK") -> str:
    """ACK frame; ``data`` is echoed verbatim when already a string (ping opaque)."""
    return json.dumps(
        {
            "code": code,
            "headers": {"messageId": message_id, "contentType": "application/json"},
            "message": message,
            "data": _encode_data(data),
        },
        ensure_ascii=False,
    )


def build_reply_frame(message_id: str, content: str) -> str:
    """Reply frame carrying the assistant's text for a chat callback."""
    return build_ack_frame(message_id, {"response": content})


# ==================== Robot messages ====================


@dataclass(frozen=True)
class RobotMessage:
    """Normalized bot callback payload."""
    sender_id: str
    sender_nick: Optional[str]
    conversation_id: str
    conversation_type: str
    msg_type: str
    text: str
    msg_id: Optional[str]
    session_webhook: Optional[str]


def parse_robot_message(payload: Dict[str, Any]) -> RobotMessage:
    """
    Extract the fields the gateway needs from a bot callback payload.

    The platform payload uses ``senderStaffId`` / ``conversationId`` /
    ``text.content``; the compact form ``{"sender": ..., "text": "..."}``
    is accepted as well.
    """
    sender_id = str(
        payload.get("senderStaffId")
        or payload.get("senderId")
        or payload.get("sender")
        or ""
    )

    text_field = payload.get("text")
    if isinstance(text_field, dict):
        text = str(text_field.get("content") or "")
    elif text_field is None:
        text = ""
    else:
        text = str(text_field)

    # conversationType: "1" = single chat, "2" = group
    conversation_type = "group" if str(payload.get("conversationType", "1")) == "2" else "dm"

    return RobotMessage(
        sender_id=sender_id,
        sender_nick=payload.get("senderNick"),
        conversation_id=str(payload.get("conversationId") or sender_id),
        conversation_type=conversation_type,
        msg_type=str(payload.get("msgtype") or "text"),
        text=text.strip(),
        msg_id=payload.get("msgId"),
        session_webhook=payload.get("sessionWebhook") or None,
    )


# ==================== REST client ====================


class DingTalkApi:
    """
    DingTalk REST client for Stream mode.

    Config params:
        client_id: AppKey / Client ID
        client_secret: AppSecret / Client Secret
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        channel_id: str = "dingtalk",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._channel_id = channel_id
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @with_retry()
    async def _get_token_payload(self) -> Dict[str, Any]:
        resp = await self._client.get(
            TOKEN_URL,
            params={"appkey": self._client_id, "appsecret": self._client_secret},
        )
        resp.raise_for_status()
        return resp.json()

    async def fetch_token(self) -> AccessToken:
        """
        Fetch a new access token (registered as the TokenCache fetcher).

        Raises:
            AuthError: the platform rejected the credentials
            TransportError: network / upstream failure
        """
        try:
            data = await self._get_token_payload()
        except httpx.HTTPError as e:
            raise TransportError(f"DingTalk token request failed: {e}", self._channel_id) from e
        except ValueError as e:
            raise TransportError(f"DingTalk token response is not JSON: {e}", self._channel_id) from e

        errcode = data.get("errcode", 0)
        if errcode != 0:
            raise AuthError(
                f"DingTalk rejected credentials: {data.get('errmsg')} ({errcode})",
                self._channel_id,
            )
        token = data.get("access_token")
        if not token:
            raise AuthError("No access_token in DingTalk response", self._channel_id)

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL)
        return AccessToken(
            value=token,
            expires_at=time.time() + expires_in,
            channel_id=self._channel_id,
        )

    async def open_connection(self, access_token: str) -> StreamEndpoint:
        """
        Register for a Stream connection and obtain ``{endpoint, ticket}``.

        Raises:
            AuthError: the bearer token or client credentials were rejected
            TransportError: network / upstream failure or malformed response
        """
        body = {
            "clientId": self._client_id,
            "clientSecret": self._client_secret,
            "subscriptions": [
                {"type": FRAME_CALLBACK, "topic": BOT_MESSAGE_TOPIC},
                {"type": FRAME_EVENT, "topic": "*"},
            ],
            "ua": USER_AGENT,
        }
        try:
            resp = await self._client.post(
                OPEN_CONNECTION_URL,
                json=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "x-acs-dingtalk-access-token": access_token,
                },
            )
        except httpx.HTTPError as e:
            raise TransportError(f"DingTalk handshake failed: {e}", self._channel_id) from e

        if resp.status_code in (401, 403):
            raise AuthError(
                f"DingTalk handshake rejected: {resp.status_code} {resp.text[:200]}",
                self._channel_id,
            )
        if resp.status_code >= 400:
            raise TransportError(
                f"DingTalk handshake failed: {resp.status_code} {resp.text[:200]}",
                self._channel_id,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"DingTalk handshake response is not JSON: {e}", self._channel_id) from e

        endpoint = data.get("endpoint")
        ticket = data.get("ticket")
        if not endpoint or not ticket:
            raise TransportError("DingTalk handshake response missing endpoint/ticket", self._channel_id)

        logger.info("Stream endpoint obtained", extra={"channel": self._channel_id, "endpoint": endpoint})
        return StreamEndpoint(endpoint=endpoint, ticket=ticket)

    async def send_via_session_webhook(self, webhook: str, content: str) -> None:
        """Post a text reply to the per-conversation session webhook."""
        payload = {"msgtype": "text", "text": {"content": content}}
        try:
            resp = await self._client.post(webhook, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"Session webhook request failed: {e}", self._channel_id) from e

        if resp.status_code >= 400:
            raise TransportError(
                f"Session webhook failed: {resp.status_code} {resp.text[:200]}",
                self._channel_id,
            )
        try:
            data = resp.json()
        except ValueError:
            return
        if isinstance(data, dict) and data.get("errcode", 0) != 0:
            raise TransportError(
                f"Session webhook rejected: {data.get('errmsg')} ({data.get('errcode')})",
                self._channel_id,
            )
