"""
AI 引擎协作者测试
"""

import json

import httpx
import pytest

from core.gateway.engine import EchoEngine, HttpResponseEngine, create_engine, load_engine
from core.gateway.errors import ConfigError, EngineError
from core.gateway.types import EngineSettings, InboundMessage


def message(text: str = "hello") -> InboundMessage:
    return InboundMessage(
        channel_id="wecom",
        sender_id="u1",
        conversation_id="u1",
        text=text,
        correlation_id="m1",
    )


def engine_with(handler) -> HttpResponseEngine:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpResponseEngine("http://assistant.local/chat", client=client)


class TestHttpResponseEngine:

    @pytest.mark.asyncio
    async def test_request_and_top_level_reply(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"reply": "hi u1"})

        assert await engine_with(handler).respond(message()) == "hi u1"
        assert seen == {
            "message": "hello",
            "user_id": "wecom:u1",
            "conversation_id": "wecom:u1",
            "channel": "wecom",
        }

    @pytest.mark.asyncio
    async def test_reply_under_data(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 0, "data": {"reply": "nested"}})

        assert await engine_with(handler).respond(message()) == "nested"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="internal error"),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"answer": "wrong key"}),
            httpx.Response(200, json=["list"]),
        ],
    )
    async def test_unusable_responses(self, response):
        with pytest.raises(EngineError):
            await engine_with(lambda request: response).respond(message())

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EngineError):
            await engine_with(handler).respond(message())


class TestEchoEngine:

    @pytest.mark.asyncio
    async def test_echo(self):
        assert await EchoEngine().respond(message("ping")) == "ping"


class TestLoadEngine:

    def test_class_is_instantiated(self):
        assert isinstance(load_engine("core.gateway.engine:EchoEngine"), EchoEngine)

    @pytest.mark.parametrize(
        "path",
        [
            "no-colon",
            "core.gateway.engine:",
            "no_such_module_xyz:factory",
            "core.gateway.engine:missing_attr",
            "core.gateway.types:WILDCARD",
            "core.gateway.engine:load_engine",
        ],
    )
    def test_bad_paths(self, path):
        with pytest.raises(ConfigError):
            load_engine(path)


class TestCreateEngine:

    def test_url(self):
        assert isinstance(create_engine(EngineSettings(url="http://x/chat")), HttpResponseEngine)

    def test_factory_wins_over_url(self):
        engine = create_engine(EngineSettings(url="http://x/chat", factory="core.gateway.engine:EchoEngine"))
        assert isinstance(engine, EchoEngine)

    def test_fallback_echo(self):
        assert isinstance(create_engine(EngineSettings()), EchoEngine)
