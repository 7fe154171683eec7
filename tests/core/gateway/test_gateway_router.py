"""
网关 HTTP 路由测试（FastAPI TestClient）

- 回调 URL 验证与消息投递的状态码映射
- 状态 / 通道列表 / doctor 接口
"""

import asyncio
import base64
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.gateway.channels.wecom import WeComChannel
from core.gateway.crypto import WebhookCrypto
from core.gateway.manager import ChannelManager
from core.gateway.token_cache import TokenCache
from core.gateway.types import DingTalkChannelConfig, WeComChannelConfig
from routers.gateway import build_webhook_router, router, set_channel_manager

from gateway_fakes import FakeConnector, FakeWeComApi

AES_KEY = base64.b64encode(bytes(range(32))).decode().rstrip("=")
TOKEN = "callback-token"
CORP_ID = "ww-corp"
PATH = "/wecom/callback"


def make_channel(allowed=("u1",)) -> WeComChannel:
    config = WeComChannelConfig(
        id="wecom",
        corp_id=CORP_ID,
        secret="app-secret",
        agent_id="1000002",
        token=TOKEN,
        encoding_aes_key=AES_KEY,
        allowed_users=list(allowed),
        callback_path=PATH,
    )
    return WeComChannel(config, TokenCache(), api=FakeWeComApi())


def text_xml(sender: str, content: str = "hello") -> str:
    return (
        f"<xml><FromUserName><![CDATA[{sender}]]></FromUserName>"
        f"<MsgType><![CDATA[text]]></MsgType><Content><![CDATA[{content}]]></Content>"
        "<MsgId>42</MsgId></xml>"
    )


def encrypted_body(ciphertext: str) -> str:
    return f"<xml><ToUserName><![CDATA[{CORP_ID}]]></ToUserName><Encrypt><![CDATA[{ciphertext}]]></Encrypt></xml>"


class WebhookHarness:
    def __init__(self, started: bool = True, allowed=("u1",)) -> None:
        self.channel = make_channel(allowed)
        self.crypto = WebhookCrypto(TOKEN, AES_KEY, receive_id=CORP_ID)
        self.received = []
        if started:
            asyncio.run(self.channel.start(self._on_message))
        app = FastAPI()
        app.include_router(build_webhook_router({PATH: self.channel}))
        self.app = app

    async def _on_message(self, msg) -> None:
        self.received.append(msg)

    def signed(self, plaintext: str, crypto: WebhookCrypto = None):
        return (crypto or self.crypto).encrypt_and_sign(plaintext, timestamp="1700000000", nonce="nonce1")


# ============================================================
# URL 验证（GET）
# ============================================================


class TestVerification:

    def test_valid_echo_returns_plaintext(self):
        h = WebhookHarness()
        envelope = h.signed("abc123")

        with TestClient(h.app) as client:
            resp = client.get(
                PATH,
                params={
                    "msg_signature": envelope.signature,
                    "timestamp": envelope.timestamp,
                    "nonce": envelope.nonce,
                    "echostr": envelope.ciphertext,
                },
            )

        assert resp.status_code == 200
        assert resp.text == "abc123"

    def test_wrong_token_is_401_with_empty_body(self):
        h = WebhookHarness()
        forged = h.signed("abc123", WebhookCrypto("wrong-token", AES_KEY, receive_id=CORP_ID))

        with TestClient(h.app) as client:
            resp = client.get(
                PATH,
                params={
                    "msg_signature": forged.signature,
                    "timestamp": forged.timestamp,
                    "nonce": forged.nonce,
                    "echostr": forged.ciphertext,
                },
            )

        assert resp.status_code == 401
        assert resp.content == b""

    def test_missing_params_is_400(self):
        h = WebhookHarness()
        with TestClient(h.app) as client:
            resp = client.get(PATH, params={"timestamp": "1", "nonce": "n"})
        assert resp.status_code == 400


# ============================================================
# 消息投递（POST）
# ============================================================


class TestDelivery:

    def _post(self, client, envelope, body=None):
        return client.post(
            PATH,
            params={"msg_signature": envelope.signature, "timestamp": envelope.timestamp, "nonce": envelope.nonce},
            content=body if body is not None else encrypted_body(envelope.ciphertext),
        )

    def test_unlisted_sender_is_acked_without_reply(self):
        h = WebhookHarness(allowed=("u1",))
        envelope = h.signed(text_xml("u2"))

        with TestClient(h.app) as client:
            resp = self._post(client, envelope)
            time.sleep(0.05)

        assert resp.status_code == 200
        assert h.received == []
        assert h.channel._api.sent == []

    def test_listed_sender_is_dispatched(self):
        h = WebhookHarness(allowed=("u1",))
        envelope = h.signed(text_xml("u1", "ping"))

        with TestClient(h.app) as client:
            resp = self._post(client, envelope)
            deadline = time.monotonic() + 2
            while not h.received and time.monotonic() < deadline:
                time.sleep(0.01)

        assert resp.status_code == 200
        assert [m.text for m in h.received] == ["ping"]

    def test_json_envelope_accepted(self):
        h = WebhookHarness()
        envelope = h.signed(text_xml("u1"))

        with TestClient(h.app) as client:
            resp = self._post(client, envelope, body=f'{{"encrypt": "{envelope.ciphertext}"}}')

        assert resp.status_code == 200

    def test_bad_signature_is_401(self):
        h = WebhookHarness()
        envelope = h.signed(text_xml("u1"))
        forged = envelope.__class__(
            ciphertext=envelope.ciphertext,
            signature="0" * 40,
            timestamp=envelope.timestamp,
            nonce=envelope.nonce,
        )

        with TestClient(h.app) as client:
            resp = self._post(client, forged)

        assert resp.status_code == 401
        assert resp.content == b""
        assert h.received == []

    def test_body_without_encrypt_is_400(self):
        h = WebhookHarness()
        envelope = h.signed(text_xml("u1"))

        with TestClient(h.app) as client:
            resp = self._post(client, envelope, body="definitely not xml")

        assert resp.status_code == 400

    def test_non_string_encrypt_field_is_400(self):
        h = WebhookHarness()
        envelope = h.signed(text_xml("u1"))

        with TestClient(h.app) as client:
            resp = self._post(client, envelope, body='{"encrypt": 123}')

        assert resp.status_code == 400
        assert h.received == []

    def test_unparseable_plaintext_is_400(self):
        h = WebhookHarness()
        envelope = h.signed("<xml><MsgType>text</MsgType></xml>")

        with TestClient(h.app) as client:
            resp = self._post(client, envelope)

        assert resp.status_code == 400

    def test_not_accepting_is_503(self):
        h = WebhookHarness(started=False)
        envelope = h.signed(text_xml("u1"))

        with TestClient(h.app) as client:
            resp = self._post(client, envelope)

        assert resp.status_code == 503


# ============================================================
# 状态接口
# ============================================================


@pytest.fixture
def status_client():
    manager = ChannelManager(config_errors={"broken": "Invalid config for channel 'broken': token: Field required"})
    connector = FakeConnector(
        DingTalkChannelConfig(id="dingtalk", client_id="cid", client_secret="sec", allowed_users=["u1", "u2"])
    )
    manager.register(connector)
    set_channel_manager(manager)

    app = FastAPI()
    app.include_router(router)
    try:
        with TestClient(app) as client:
            yield client, connector
    finally:
        set_channel_manager(None)


class TestStatusRoutes:

    def test_status_without_manager(self):
        set_channel_manager(None)
        app = FastAPI()
        app.include_router(router)

        with TestClient(app) as client:
            assert client.get("/api/v1/gateway/status").json() == {"enabled": False, "channels": []}

    def test_status_lists_valid_and_invalid_channels(self, status_client):
        client, _ = status_client

        body = client.get("/api/v1/gateway/status").json()

        assert body["enabled"] is True
        by_id = {c["id"]: c for c in body["channels"]}
        assert by_id["dingtalk"]["state"] == "idle"
        assert by_id["dingtalk"]["allowed_users"] == ["u1", "u2"]
        assert by_id["broken"]["state"] == "invalid"
        assert "token" in by_id["broken"]["error"]

    def test_channels(self, status_client):
        client, _ = status_client
        ids = [c["id"] for c in client.get("/api/v1/gateway/channels").json()]
        assert ids == ["dingtalk", "broken"]

    def test_doctor_reports_config_errors_as_unhealthy(self, status_client):
        client, _ = status_client

        body = client.get("/api/v1/gateway/doctor").json()

        assert body["healthy"] is False
        reports = {r["channel_id"]: r for r in body["channels"]}
        assert reports["dingtalk"]["healthy"] is True
        assert reports["broken"]["healthy"] is False
