from .gateway import build_webhook_router, router as gateway_router, set_channel_manager

__all__ = [
    "build_webhook_router",
    "gateway_router",
    "set_channel_manager",
]
