"""
企业微信回调连接器单元测试
"""

import asyncio
import base64
import json
import xml.etree.ElementTree as ET

import httpx
import pytest

from core.gateway.channels.wecom import (
    SEND_URL,
    WeComApi,
    WeComChannel,
    parse_callback_message,
)
from core.gateway.crypto import WebhookCrypto
from core.gateway.errors import (
    AuthError,
    ConfigError,
    GatewayError,
    ReplyTimeoutError,
    SecurityError,
    TransportError,
)
from core.gateway.token_cache import TokenCache
from core.gateway.types import ConnectorState, OutboundMessage, WeComChannelConfig

from gateway_fakes import FakeWeComApi, wait_until

AES_KEY = base64.b64encode(bytes(range(32))).decode().rstrip("=")
TOKEN = "callback-token"
CORP_ID = "ww-corp"


def make_config(**overrides) -> WeComChannelConfig:
    params = {
        "id": "wecom",
        "corp_id": CORP_ID,
        "secret": "app-secret",
        "agent_id": 1000002,
        "token": TOKEN,
        "encoding_aes_key": AES_KEY,
        "allowed_users": ["u1"],
    }
    params.update(overrides)
    return WeComChannelConfig(**params)


def text_xml(sender: str = "u1", content: str = "hello", msg_id: str = "1234567890") -> str:
    return (
        "<xml>"
        f"<ToUserName><![CDATA[{CORP_ID}]]></ToUserName>"
        f"<FromUserName><![CDATA[{sender}]]></FromUserName>"
        "<CreateTime>1700000000</CreateTime>"
        "<MsgType><![CDATA[text]]></MsgType>"
        f"<Content><![CDATA[{content}]]></Content>"
        f"<MsgId>{msg_id}</MsgId>"
        "<AgentID>1000002</AgentID>"
        "</xml>"
    )


def outbound(content: str = "reply") -> OutboundMessage:
    return OutboundMessage(
        channel_id="wecom",
        conversation_id="u1",
        content=content,
        correlation_id="1234567890",
        recipient_id="u1",
    )


class Harness:
    def __init__(self, config=None) -> None:
        self.api = FakeWeComApi()
        self.cache = TokenCache()
        self.channel = WeComChannel(config or make_config(), self.cache, api=self.api)
        self.crypto = WebhookCrypto(TOKEN, AES_KEY, receive_id=CORP_ID)
        self.received = []

    async def on_message(self, msg) -> None:
        self.received.append(msg)

    async def start(self) -> None:
        await self.channel.start(self.on_message)

    def deliver(self, plaintext: str):
        envelope = self.crypto.encrypt_and_sign(plaintext, timestamp="1700000000", nonce="n1")
        return self.channel.handle_delivery(envelope.signature, envelope.timestamp, envelope.nonce, envelope.ciphertext)


# ============================================================
# 回调消息解析
# ============================================================


class TestParseCallbackMessage:

    def test_xml_text_message(self):
        msg = parse_callback_message(text_xml(sender="zhangsan", content=" 你好 "))

        assert msg.sender_id == "zhangsan"
        assert msg.msg_type == "text"
        assert msg.content == "你好"
        assert msg.msg_id == "1234567890"
        assert msg.conversation_id == "zhangsan"
        assert msg.conversation_type == "dm"
        assert msg.create_time == 1700000000

    def test_json_group_message(self):
        msg = parse_callback_message(
            json.dumps(
                {
                    "msgid": "m-1",
                    "chatid": "group-1",
                    "chattype": "group",
                    "from": {"userid": "u1"},
                    "msgtype": "text",
                    "text": {"content": "@bot hi"},
                }
            )
        )

        assert msg.sender_id == "u1"
        assert msg.conversation_id == "group-1"
        assert msg.conversation_type == "group"
        assert msg.content == "@bot hi"
        assert msg.msg_id == "m-1"

    @pytest.mark.parametrize(
        "plaintext",
        ["<xml><MsgType>text</MsgType></xml>", "<xml>", '{"msgtype": "text"}', "{broken", "[]"],
    )
    def test_malformed_messages(self, plaintext):
        with pytest.raises(ValueError):
            parse_callback_message(plaintext)


# ============================================================
# 回调处理
# ============================================================


class TestCallbackHandling:

    def test_bad_key_is_config_error(self):
        with pytest.raises(ConfigError):
            WeComChannel(make_config(encoding_aes_key=AES_KEY[:-1] + "!"), TokenCache(), api=FakeWeComApi())

    @pytest.mark.asyncio
    async def test_verification_returns_plaintext_echo(self):
        h = Harness()
        await h.start()
        envelope = h.crypto.encrypt_and_sign("abc123", timestamp="1", nonce="n")

        assert h.channel.handle_verification(envelope.signature, "1", "n", envelope.ciphertext) == "abc123"

    @pytest.mark.asyncio
    async def test_verification_with_wrong_signature(self):
        h = Harness()
        await h.start()
        envelope = h.crypto.encrypt_and_sign("abc123", timestamp="1", nonce="n")

        with pytest.raises(SecurityError):
            h.channel.handle_verification("0" * 40, "1", "n", envelope.ciphertext)

    @pytest.mark.asyncio
    async def test_accepted_message_is_dispatched(self):
        h = Harness()
        await h.start()

        ack = h.deliver(text_xml(sender="u1", content="hello"))
        await wait_until(lambda: h.received)

        assert ack.body == ""
        msg = h.received[0]
        assert msg.channel_id == "wecom"
        assert msg.sender_id == "u1"
        assert msg.text == "hello"
        assert msg.correlation_id == "1234567890"

    @pytest.mark.asyncio
    async def test_unlisted_sender_is_acked_and_dropped(self):
        h = Harness()
        await h.start()

        ack = h.deliver(text_xml(sender="u2"))
        await asyncio.sleep(0.05)

        assert ack.body == ""
        assert h.received == []
        assert h.api.sent == []

    @pytest.mark.asyncio
    async def test_non_text_message_is_acked_not_dispatched(self):
        h = Harness()
        await h.start()

        ack = h.deliver(
            "<xml><FromUserName>u1</FromUserName><MsgType>image</MsgType><PicUrl>http://x</PicUrl></xml>"
        )
        await asyncio.sleep(0.05)

        assert ack.body == ""
        assert h.received == []

    @pytest.mark.asyncio
    async def test_tampered_delivery_is_security_error(self):
        h = Harness()
        await h.start()
        envelope = h.crypto.encrypt_and_sign(text_xml(), timestamp="1", nonce="n")

        with pytest.raises(SecurityError):
            h.channel.handle_delivery(envelope.signature, "2", "n", envelope.ciphertext)
        assert h.received == []

    @pytest.mark.asyncio
    async def test_unparseable_plaintext_is_value_error(self):
        h = Harness()
        await h.start()

        with pytest.raises(ValueError):
            h.deliver("<xml><MsgType>text</MsgType></xml>")

    def test_not_accepting_before_start(self):
        h = Harness()
        with pytest.raises(TransportError):
            h.deliver(text_xml())

    @pytest.mark.asyncio
    async def test_encrypted_ack(self):
        h = Harness(make_config(encrypted_ack=True))
        await h.start()

        ack = h.deliver(text_xml())

        assert ack.media_type == "application/xml"
        root = ET.fromstring(ack.body)
        assert h.crypto.decrypt_and_verify(
            root.findtext("MsgSignature"), root.findtext("TimeStamp"), root.findtext("Nonce"), root.findtext("Encrypt")
        ) == ""

    @pytest.mark.asyncio
    async def test_stop_cancels_dispatch_after_grace(self):
        h = Harness(make_config(shutdown_grace=0.05))
        started = asyncio.Event()

        async def slow(msg):
            started.set()
            await asyncio.sleep(10)

        await h.channel.start(slow)
        h.deliver(text_xml())
        await asyncio.wait_for(started.wait(), 1)

        await asyncio.wait_for(h.channel.stop(), 1)

        assert h.channel.state == ConnectorState.STOPPED
        assert not h.channel.accepting
        assert h.api.closed
        with pytest.raises(TransportError):
            h.deliver(text_xml())


# ============================================================
# 回复推送
# ============================================================


class TestPush:

    @pytest.mark.asyncio
    async def test_push_sends_to_original_sender(self):
        h = Harness()

        await h.channel.push(outbound("hi there"))

        assert h.api.sent == [("tok-1", "u1", "hi there")]

    @pytest.mark.asyncio
    async def test_auth_rejection_refreshes_token_and_retries_once(self):
        h = Harness()
        h.api.send_errors = [AuthError("access_token expired")]

        await h.channel.push(outbound())

        assert h.api.token_calls == 2
        assert h.api.sent == [("tok-2", "u1", "reply")]

    @pytest.mark.asyncio
    async def test_second_auth_rejection_propagates(self):
        h = Harness()
        h.api.send_errors = [AuthError("expired"), AuthError("expired again")]

        with pytest.raises(AuthError):
            await h.channel.push(outbound())
        assert h.channel.health().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_transport_failure_retried_once(self):
        h = Harness()
        h.api.send_errors = [TransportError("busy")]

        await h.channel.push(outbound())

        assert len(h.api.sent) == 1
        assert h.api.token_calls == 1

    @pytest.mark.asyncio
    async def test_transport_failure_twice_propagates(self):
        h = Harness()
        h.api.send_errors = [TransportError("busy"), TransportError("busy")]

        with pytest.raises(TransportError):
            await h.channel.push(outbound())
        assert h.api.sent == []

    @pytest.mark.asyncio
    async def test_other_platform_error_is_not_retried(self):
        h = Harness()
        h.api.send_errors = [GatewayError("invalid user"), TransportError("unused")]

        with pytest.raises(GatewayError) as exc_info:
            await h.channel.push(outbound())
        assert type(exc_info.value) is GatewayError
        assert len(h.api.send_errors) == 1

    @pytest.mark.asyncio
    async def test_push_bounded_by_reply_timeout(self):
        h = Harness(make_config(reply_timeout=0.05))
        h.api.send_delay = 0.5

        with pytest.raises(ReplyTimeoutError):
            await h.channel.push(outbound())

    @pytest.mark.asyncio
    async def test_send_is_push(self):
        h = Harness()
        await h.channel.send(outbound("via send"))
        assert h.api.sent[0][2] == "via send"


# ============================================================
# REST 客户端
# ============================================================


def _api(handler) -> WeComApi:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WeComApi(CORP_ID, "app-secret", "1000002", channel_id="wecom", client=client)


def _send_response(status: int = 200, **body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body)
    return handler


class TestWeComApi:

    @pytest.mark.asyncio
    async def test_fetch_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["corpid"] == CORP_ID
            return httpx.Response(200, json={"errcode": 0, "access_token": "abc", "expires_in": 7200})

        token = await _api(handler).fetch_token()
        assert token.value == "abc"

    @pytest.mark.asyncio
    async def test_fetch_token_rejected(self):
        with pytest.raises(AuthError):
            await _api(_send_response(errcode=40013, errmsg="invalid corpid")).fetch_token()

    @pytest.mark.asyncio
    async def test_send_text_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url).split("?")[0]
            seen["token"] = request.url.params["access_token"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})

        await _api(handler).send_text("abc", "u1", "hello")

        assert seen["url"] == SEND_URL
        assert seen["token"] == "abc"
        assert seen["body"]["touser"] == "u1"
        assert seen["body"]["agentid"] == "1000002"
        assert seen["body"]["text"] == {"content": "hello"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("errcode", [40001, 40014, 42001])
    async def test_send_text_auth_errcodes(self, errcode):
        with pytest.raises(AuthError):
            await _api(_send_response(errcode=errcode, errmsg="token")).send_text("abc", "u1", "x")

    @pytest.mark.asyncio
    async def test_send_text_busy_is_transport_error(self):
        with pytest.raises(TransportError):
            await _api(_send_response(errcode=-1, errmsg="system busy")).send_text("abc", "u1", "x")

    @pytest.mark.asyncio
    async def test_send_text_server_error_is_transport_error(self):
        with pytest.raises(TransportError):
            await _api(_send_response(502, errmsg="bad gateway")).send_text("abc", "u1", "x")

    @pytest.mark.asyncio
    async def test_send_text_other_errcode(self):
        with pytest.raises(GatewayError) as exc_info:
            await _api(_send_response(errcode=81013, errmsg="user invalid")).send_text("abc", "u1", "x")
        assert not isinstance(exc_info.value, (AuthError, TransportError))
