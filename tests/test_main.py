"""
FastAPI 应用装配测试（生命周期内启动网关）
"""

import base64

from fastapi.testclient import TestClient

from core.gateway.crypto import WebhookCrypto
from core.gateway.loader import parse_gateway_config
from core.gateway.types import GatewayConfig
from main import create_app

AES_KEY = base64.b64encode(bytes(range(32))).decode().rstrip("=")


class EchoUpper:
    async def respond(self, message) -> str:
        return message.text.upper()


def wecom_only_config() -> GatewayConfig:
    return parse_gateway_config(
        {
            "channels": {
                "wecom": {
                    "corp_id": "corp",
                    "secret": "s",
                    "agent_id": "1",
                    "token": "t",
                    "encoding_aes_key": AES_KEY,
                    "allowed_users": ["u1"],
                    "callback_path": "/cb/wecom",
                },
                "dingtalk": {"client_id": "cid"},
            }
        }
    )


class TestApp:

    def test_health_without_channels(self):
        with TestClient(create_app(GatewayConfig())) as client:
            body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["channels"] == {}

    def test_root_lists_endpoints(self):
        with TestClient(create_app(GatewayConfig())) as client:
            body = client.get("/").json()

        assert body["endpoints"]["doctor"] == "/api/v1/gateway/doctor"

    def test_missing_config_file_starts_without_channels(self, tmp_path):
        with TestClient(create_app(tmp_path / "absent.yaml")) as client:
            assert client.get("/health").status_code == 200
            assert client.get("/api/v1/gateway/status").json() == {"enabled": False, "channels": []}

    def test_webhook_channel_is_mounted_and_listening(self):
        crypto = WebhookCrypto("t", AES_KEY, receive_id="corp")
        envelope = crypto.encrypt_and_sign("hello-check", timestamp="1", nonce="n")

        with TestClient(create_app(wecom_only_config(), engine=EchoUpper())) as client:
            assert client.get("/health").json()["channels"] == {"wecom": "listening"}

            resp = client.get(
                "/cb/wecom",
                params={
                    "msg_signature": envelope.signature,
                    "timestamp": "1",
                    "nonce": "n",
                    "echostr": envelope.ciphertext,
                },
            )
            assert resp.status_code == 200
            assert resp.text == "hello-check"

            status = client.get("/api/v1/gateway/status").json()
            states = {c["id"]: c["state"] for c in status["channels"]}
            assert states == {"wecom": "listening", "dingtalk": "invalid"}
