"""
WeCom (Enterprise WeChat) channel connector

Callback mode: the platform POSTs encrypted messages to a gateway HTTP
endpoint, and replies are pushed asynchronously through the message/send
REST API with a separately cached access token.

The HTTP listener is owned by the router; this module only provides the
pure handlers it calls (handle_verification / handle_delivery).
"""

import asyncio
import json
import time
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import httpx

from logger import clear_message_context, get_logger, set_message_context

from core.gateway.access import check_sender
from core.gateway.channel import OnMessageCallback
from core.gateway.crypto import WebhookCrypto
from core.gateway.errors import (
    AuthError,
    GatewayError,
    ReplyTimeoutError,
    SecurityError,
    TransportError,
)
from core.gateway.token_cache import TokenCache
from core.gateway.types import (
    AccessToken,
    Ack,
    ChannelHealth,
    ConnectorState,
    InboundMessage,
    OutboundMessage,
    WeComChannelConfig,
)
from infra.resilience import run_with_timeout, with_retry

logger = get_logger("gateway.channels.wecom")

TOKEN_URL = "https://qyapi.weixin.qq.com/cgi-bin/gettoken"
SEND_URL = "https://qyapi.weixin.qq.com/cgi-bin/message/send"

# invalid credential / invalid access_token / access_token expired
AUTH_ERRCODES = frozenset({40001, 40014, 42001})
SYSTEM_BUSY_ERRCODE = -1

DEFAULT_TOKEN_TTL = 7200


# ==================== Callback envelope ====================


@dataclass(frozen=True)
class CallbackMessage:
    """Decrypted callback payload, normalized from XML or JSON."""
    sender_id: str
    msg_type: str
    content: str
    msg_id: str
    conversation_id: str
    conversation_type: str = "dm"
    create_time: Optional[float] = None


def parse_callback_message(plaintext: str) -> CallbackMessage:
    """
    Parse the decrypted envelope.

    XML: ``FromUserName / MsgType / Content / MsgId / CreateTime``
    JSON: ``from.userid / chatid / chattype / msgtype / text.content / msgid``

    Raises:
        ValueError: malformed envelope or missing sender
    """
    text = plaintext.strip()
    if text.startswith("{"):
        return _parse_json_message(text)
    return _parse_xml_message(text)


def _parse_xml_message(text: str) -> CallbackMessage:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ValueError(f"Malformed XML message: {e}") from e

    sender_id = (root.findtext("FromUserName") or "").strip()
    if not sender_id:
        raise ValueError("Message has no FromUserName")

    create_time = root.findtext("CreateTime")
    return CallbackMessage(
        sender_id=sender_id,
        msg_type=(root.findtext("MsgType") or "").strip(),
        content=(root.findtext("Content") or "").strip(),
        msg_id=(root.findtext("MsgId") or "").strip(),
        conversation_id=sender_id,
        create_time=float(create_time) if create_time and create_time.strip().isdigit() else None,
    )


def _parse_json_message(text: str) -> CallbackMessage:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed JSON message: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("JSON message is not an object")

    sender = data.get("from") or {}
    sender_id = str(sender.get("userid") or "").strip() if isinstance(sender, dict) else ""
    if not sender_id:
        raise ValueError("Message has no from.userid")

    body = data.get("text") or {}
    content = body.get("content", "") if isinstance(body, dict) else str(body)

    chat_id = data.get("chatid")
    is_group = data.get("chattype") == "group" or bool(chat_id)
    return CallbackMessage(
        sender_id=sender_id,
        msg_type=str(data.get("msgtype") or ""),
        content=str(content).strip(),
        msg_id=str(data.get("msgid") or ""),
        conversation_id=str(chat_id) if chat_id else sender_id,
        conversation_type="group" if is_group else "dm",
    )


# ==================== REST client ====================


class WeComApi:
    """
    WeCom REST client (token + message push).

    Config params:
        corp_id: enterprise corp id
        secret: application secret
        agent_id: application agent id
    """

    def __init__(
        self,
        corp_id: str,
        secret: str,
        agent_id: str,
        channel_id: str = "wecom",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._corp_id = corp_id
        self._secret = secret
        self._agent_id = agent_id
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
            params={"corpid": self._corp_id, "corpsecret": self._secret},
        )
        resp.raise_for_status()
        return resp.json()

    async def fetch_token(self) -> AccessToken:
        """
        Fetch a new access token (registered as the TokenCache fetcher).

        Raises:
            AuthError: errcode != 0 from gettoken
            TransportError: network / upstream failure
        """
        try:
            data = await self._get_token_payload()
        except httpx.HTTPError as e:
            raise TransportError(f"WeCom gettoken request failed: {e}", self._channel_id) from e
        except ValueError as e:
            raise TransportError(f"WeCom gettoken response is not JSON: {e}", self._channel_id) from e

        errcode = data.get("errcode", 0)
        if errcode != 0:
            raise AuthError(
                f"WeCom gettoken failed: {data.get('errmsg')} ({errcode})",
                self._channel_id,
            )
        token = data.get("access_token")
        if not token:
            raise AuthError("WeCom gettoken returned no access_token", self._channel_id)

        return AccessToken(
            value=token,
            expires_at=time.time() + int(data.get("expires_in") or DEFAULT_TOKEN_TTL),
            channel_id=self._channel_id,
        )

    async def send_text(self, access_token: str, touser: str, content: str) -> None:
        """
        Push one text message.

        Raises:
            AuthError: the access token was rejected (40001 / 40014 / 42001)
            TransportError: network failure, 5xx, or platform busy
            GatewayError: any other platform rejection
        """
        payload = {
            "touser": touser,
            "msgtype": "text",
            "agentid": self._agent_id,
            "text": {"content": content},
            "safe": 0,
        }
        try:
            resp = await self._client.post(
                SEND_URL,
                params={"access_token": access_token},
                json=payload,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"WeCom send request failed: {e}", self._channel_id) from e

        if resp.status_code >= 500:
            raise TransportError(f"WeCom send failed: HTTP {resp.status_code}", self._channel_id)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"WeCom send response is not JSON: {e}", self._channel_id) from e

        errcode = data.get("errcode", 0)
        if errcode == 0:
            return
        message = f"WeCom send failed: {data.get('errmsg')} ({errcode})"
        if errcode in AUTH_ERRCODES:
            raise AuthError(message, self._channel_id)
        if errcode == SYSTEM_BUSY_ERRCODE:
            raise TransportError(message, self._channel_id)
        raise GatewayError(message, self._channel_id)


# ==================== Connector ====================


class WeComChannel:
    """
    WeCom callback-mode connector.

    Config params: see WeComChannelConfig. The encoding AES key is
    validated at construction (ConfigError on a bad key).
    """

    def __init__(
        self,
        config: WeComChannelConfig,
        token_cache: TokenCache,
        api: Optional[WeComApi] = None,
    ) -> None:
        self._config = config
        self._token_cache = token_cache
        self._crypto = WebhookCrypto(
            config.token,
            config.encoding_aes_key,
            receive_id=config.corp_id,
            digest=config.signature_digest,
        )
        self._api = api or WeComApi(
            config.corp_id,
            config.secret,
            config.agent_id,
            channel_id=config.id,
        )
        self._state = ConnectorState.IDLE
        self._accepting = False
        self._on_message: Optional[OnMessageCallback] = None
        self._tasks: Set[asyncio.Task] = set()
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None

        token_cache.register(config.id, self._api.fetch_token)

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def platform(self) -> str:
        return "wecom"

    @property
    def config(self) -> WeComChannelConfig:
        return self._config

    @property
    def callback_path(self) -> str:
        return self._config.callback_path

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def state(self) -> ConnectorState:
        return self._state

    def health(self) -> ChannelHealth:
        healthy = self._state == ConnectorState.LISTENING
        return ChannelHealth(
            channel_id=self.id,
            platform=self.platform,
            state=self._state,
            healthy=healthy,
            detail=f"callback {self.callback_path} " + ("accepting" if healthy else self._state.value),
            consecutive_failures=self._consecutive_failures,
            last_error=self._last_error,
        )

    async def start(self, on_message: OnMessageCallback) -> None:
        """Mark the connector as accepting callback requests."""
        self._on_message = on_message
        self._accepting = True
        self._state = ConnectorState.LISTENING
        logger.info(
            "WeCom channel accepting callbacks",
            extra={"channel": self.id, "path": self.callback_path},
        )

    async def stop(self) -> None:
        """Stop accepting, give in-flight dispatches shutdown_grace seconds, then cancel them."""
        self._accepting = False
        tasks = list(self._tasks)
        if tasks:
            logger.info(
                "Waiting for in-flight WeCom dispatches",
                extra={"channel": self.id, "in_flight": len(tasks), "grace_seconds": self._config.shutdown_grace},
            )
            _, pending = await asyncio.wait(tasks, timeout=self._config.shutdown_grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Cancelled WeCom dispatches after grace period",
                    extra={"channel": self.id, "cancelled": len(pending)},
                )
        self._tasks.clear()
        self._state = ConnectorState.STOPPED
        await self._api.aclose()
        logger.info("WeCom channel stopped", extra={"channel": self.id})

    # ==================== Callback handlers ====================

    def handle_verification(self, signature: str, timestamp: str, nonce: str, challenge: str) -> str:
        """
        URL verification (GET): verify and decrypt ``echostr``.

        Returns the plaintext to echo back as the HTTP body.

        Raises:
            SecurityError: signature mismatch / undecryptable challenge
            TransportError: connector is not accepting requests
        """
        self._ensure_accepting()
        try:
            plaintext = self._crypto.decrypt_and_verify(signature, timestamp, nonce, challenge)
        except SecurityError as e:
            self._log_security_failure("verification", e)
            raise
        logger.info("WeCom callback URL verified", extra={"channel": self.id})
        return plaintext

    def handle_delivery(self, signature: str, timestamp: str, nonce: str, ciphertext: str) -> Ack:
        """
        Message delivery (POST): verify, decrypt, filter, dispatch in the background.

        Returns the synchronous acknowledgment immediately; the reply is
        pushed later through push().

        Raises:
            SecurityError: signature mismatch / decryption failure
            TransportError: connector is not accepting requests
            ValueError: the decrypted envelope cannot be parsed
        """
        self._ensure_accepting()
        try:
            plaintext = self._crypto.decrypt_and_verify(signature, timestamp, nonce, ciphertext)
        except SecurityError as e:
            self._log_security_failure("delivery", e)
            raise

        message = parse_callback_message(plaintext)

        if not check_sender(self.id, message.sender_id, self._config.allow_list):
            return Ack.empty()

        if message.msg_type != "text" or not message.content:
            logger.info(
                "Non-text WeCom message acknowledged, not forwarded",
                extra={"channel": self.id, "msg_type": message.msg_type or "-"},
            )
            return self._ack(timestamp, nonce)

        inbound = InboundMessage(
            channel_id=self.id,
            sender_id=message.sender_id,
            conversation_id=message.conversation_id,
            conversation_type=message.conversation_type,
            text=message.content,
            correlation_id=message.msg_id or uuid.uuid4().hex,
        )
        task = asyncio.create_task(self._dispatch(inbound), name=f"{self.id}_dispatch")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "WeCom message accepted",
            extra={"channel": self.id, "sender": inbound.sender_id, "corr": inbound.correlation_id},
        )
        return self._ack(timestamp, nonce)

    def _ack(self, timestamp: str, nonce: str) -> Ack:
        if not self._config.encrypted_ack:
            return Ack.empty()
        return Ack(
            body=self._crypto.build_encrypted_reply("", timestamp, nonce),
            media_type="application/xml",
        )

    def _ensure_accepting(self) -> None:
        if not self._accepting:
            raise TransportError("WeCom channel is not accepting requests", self.id)

    def _log_security_failure(self, phase: str, error: SecurityError) -> None:
        logger.warning(
            "Rejected WeCom callback: possible integrity violation",
            extra={"channel": self.id, "phase": phase, "error": str(error), "audit": "security_rejected"},
        )

    async def _dispatch(self, msg: InboundMessage) -> None:
        set_message_context(msg.channel_id, msg.sender_id, msg.correlation_id)
        try:
            if self._on_message:
                await self._on_message(msg)
        except Exception as e:
            logger.error(
                "Error handling WeCom message",
                extra={"channel": self.id, "corr": msg.correlation_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            clear_message_context()

    # ==================== Outbound ====================

    async def push(self, message: OutboundMessage) -> None:
        """
        Push a reply via message/send, bounded by reply_timeout.

        An auth-rejected response invalidates the cached token and is
        retried once with a fresh token; a transport failure is retried
        once as well.

        Raises:
            AuthError / TransportError: failure after the single retry
            ReplyTimeoutError: reply_timeout exceeded
        """
        try:
            await run_with_timeout(
                self._push_with_retry(message),
                self._config.reply_timeout,
                operation="wecom.push",
                error_factory=lambda msg: ReplyTimeoutError(msg, self.id),
            )
        except GatewayError as e:
            self._consecutive_failures += 1
            self._last_error = str(e)
            raise
        self._consecutive_failures = 0

    send = push

    async def _push_with_retry(self, message: OutboundMessage) -> None:
        touser = message.recipient_id or message.conversation_id
        for attempt in range(2):
            token = await self._token_cache.get_or_refresh(self.id)
            try:
                await self._api.send_text(token.value, touser, message.content)
            except AuthError as e:
                if attempt:
                    raise
                logger.warning(
                    "WeCom token rejected, refreshing and retrying",
                    extra={"channel": self.id, "error": str(e)},
                )
                self._token_cache.invalidate(self.id)
                continue
            except TransportError as e:
                if attempt:
                    raise
                logger.warning(
                    "WeCom push failed, retrying once",
                    extra={"channel": self.id, "error": str(e)},
                )
                continue
            logger.info(
                "WeCom reply pushed",
                extra={"channel": self.id, "to": touser, "corr": message.correlation_id},
            )
            return

    async def check(self) -> ChannelHealth:
        """Key material is validated at construction; probe the token endpoint."""
        try:
            await self._token_cache.get_or_refresh(self.id)
        except GatewayError as e:
            return ChannelHealth(
                channel_id=self.id,
                platform=self.platform,
                state=self._state,
                healthy=False,
                detail=f"{type(e).__name__}: {e}",
                last_error=str(e),
            )
        return ChannelHealth(
            channel_id=self.id,
            platform=self.platform,
            state=self._state,
            healthy=True,
            detail="encoding key ok, token ok",
        )
