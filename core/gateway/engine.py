"""
AI engine collaborator

The gateway treats the assistant as a black box: text in, text out.
``ResponseEngine`` is the only interface the dispatcher depends on.
"""

import importlib
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from logger import get_logger

from core.gateway.errors import ConfigError, EngineError
from core.gateway.types import EngineSettings, InboundMessage

logger = get_logger("gateway.engine")


@runtime_checkable
class ResponseEngine(Protocol):
    """Produces a reply for one inbound message."""

    async def respond(self, message: InboundMessage) -> str:
        ...


class HttpResponseEngine:
    """
    Calls a local assistant over HTTP.

    Request body: ``{message, user_id, conversation_id, channel}``.
    The reply is read from ``reply`` (top level or under ``data``).
    """

    def __init__(
        self,
        url: str,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def respond(self, message: InboundMessage) -> str:
        payload: Dict[str, Any] = {
            "message": message.text,
            "user_id": f"{message.channel_id}:{message.sender_id}",
            "conversation_id": f"{message.channel_id}:{message.conversation_id}",
            "channel": message.channel_id,
        }

        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise EngineError(f"Engine request failed: {e}", message.channel_id) from e

        if resp.status_code >= 400:
            err_body = resp.text
            if len(err_body) > 500:
                err_body = err_body[:500] + "..."
            raise EngineError(
                f"Engine returned {resp.status_code}: {err_body}", message.channel_id
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise EngineError(f"Engine response is not JSON: {e}", message.channel_id) from e

        data = body.get("data") or body if isinstance(body, dict) else {}
        reply = data.get("reply") if isinstance(data, dict) else None
        if not isinstance(reply, str):
            raise EngineError("Engine response missing 'reply'", message.channel_id)
        return reply


class EchoEngine:
    """Returns the inbound text unchanged. Useful for wiring checks."""

    async def respond(self, message: InboundMessage) -> str:
        return message.text


def load_engine(path: str) -> ResponseEngine:
    """
    Resolve ``"package.module:attr"`` to an engine.

    ``attr`` may be an engine instance, or a class / factory called with no
    arguments.

    Raises:
        ConfigError: bad path, import failure, or the result has no respond()
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Engine factory must look like 'package.module:attr', got '{path}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import engine module '{module_name}': {e}") from e

    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ConfigError(f"Module '{module_name}' has no attribute '{attr}'") from None

    engine = target
    if isinstance(target, type) or (callable(target) and not hasattr(target, "respond")):
        try:
            engine = target()
        except TypeError as e:
            raise ConfigError(f"Engine factory '{path}' must be callable without arguments: {e}") from e
    if isinstance(engine, type) or not isinstance(engine, ResponseEngine):
        raise ConfigError(f"'{path}' did not produce an object with respond()")

    logger.info("Custom engine loaded", extra={"factory": path, "engine": type(engine).__name__})
    return engine


def create_engine(settings: EngineSettings) -> ResponseEngine:
    """Build the engine described by the gateway config."""
    if settings.factory:
        return load_engine(settings.factory)
    if settings.url:
        return HttpResponseEngine(settings.url, timeout=settings.timeout)
    logger.warning("No engine configured, falling back to echo engine")
    return EchoEngine()
