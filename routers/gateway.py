"""
Gateway HTTP routes

- Webhook callback routes (one GET + POST pair per webhook channel)
- Gateway / channel status and doctor endpoints
"""

from typing import Any, Dict, List, Mapping, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse

from logger import get_logger

from core.gateway.crypto import extract_encrypted
from core.gateway.errors import SecurityError, TransportError

logger = get_logger("routers.gateway")

router = APIRouter(prefix="/api/v1/gateway", tags=["gateway"])

# Module-level reference to the ChannelManager (set during startup)
_channel_manager = None


def set_channel_manager(manager) -> None:
    """Set the ChannelManager instance for this router (called from main.py lifespan)."""
    global _channel_manager
    _channel_manager = manager


# ==================== Status Endpoints ====================


@router.get("/status")
async def get_gateway_status() -> Dict[str, Any]:
    """
    Get gateway status and all channel states.

    Returns:
        {
            "enabled": true,
            "channels": [
                {"id": "dingtalk", "platform": "dingtalk", "state": "connected", ...},
                {"id": "wecom", "platform": "wecom", "state": "listening", ...}
            ]
        }
    """
    if _channel_manager is None:
        return {
            "enabled": False,
            "channels": [],
        }

    return {
        "enabled": True,
        "channels": _channel_manager.list_channels(),
    }


@router.get("/channels")
async def list_channels() -> List[Dict[str, Any]]:
    """List all configured channels (including invalid ones) with their state."""
    if _channel_manager is None:
        return []

    return _channel_manager.list_channels()


@router.get("/doctor")
async def run_doctor() -> Dict[str, Any]:
    """Run credential / connectivity checks for every channel."""
    if _channel_manager is None:
        return {"healthy": False, "channels": []}

    reports = await _channel_manager.doctor()
    return {
        "healthy": bool(reports) and all(r.healthy for r in reports),
        "channels": [r.model_dump(mode="json") for r in reports],
    }


# ==================== Webhook Endpoints ====================


def _query(request: Request, *names: str) -> Optional[str]:
    for name in names:
        value = request.query_params.get(name)
        if value:
            return value
    return None


def build_webhook_router(routes: Mapping[str, Any]) -> APIRouter:
    """
    Build callback routes for webhook connectors.

    Args:
        routes: callback path -> connector exposing handle_verification /
            handle_delivery

    Status mapping: SecurityError -> 401 (empty body), unparseable body ->
    400, connector not accepting -> 503.
    """
    webhook_router = APIRouter(tags=["webhook"])
    for path, connector in routes.items():
        _add_callback_routes(webhook_router, path, connector)
    return webhook_router


def _add_callback_routes(webhook_router: APIRouter, path: str, connector: Any) -> None:
    async def verify(request: Request) -> Response:
        signature = _query(request, "msg_signature", "signature")
        timestamp = _query(request, "timestamp")
        nonce = _query(request, "nonce")
        echostr = _query(request, "echostr")
        if not (signature and timestamp and nonce and echostr):
            return Response(status_code=400)

        try:
            plaintext = connector.handle_verification(signature, timestamp, nonce, echostr)
        except SecurityError:
            return Response(status_code=401)
        except TransportError:
            return Response(status_code=503)
        return PlainTextResponse(plaintext)

    async def deliver(request: Request) -> Response:
        signature = _query(request, "msg_signature", "signature")
        timestamp = _query(request, "timestamp")
        nonce = _query(request, "nonce")
        if not (signature and timestamp and nonce):
            return Response(status_code=400)

        body = (await request.body()).decode("utf-8", errors="replace")
        try:
            ciphertext = extract_encrypted(body)
        except ValueError as e:
            logger.warning("Unparseable callback body", extra={"channel": connector.id, "error": str(e)})
            return Response(status_code=400)

        try:
            ack = connector.handle_delivery(signature, timestamp, nonce, ciphertext)
        except SecurityError:
            return Response(status_code=401)
        except TransportError:
            return Response(status_code=503)
        except ValueError as e:
            logger.warning("Unparseable callback message", extra={"channel": connector.id, "error": str(e)})
            return Response(status_code=400)
        return Response(content=ack.body, media_type=ack.media_type)

    webhook_router.add_api_route(path, verify, methods=["GET"], name=f"{connector.id}_verify")
    webhook_router.add_api_route(path, deliver, methods=["POST"], name=f"{connector.id}_deliver")
