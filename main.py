"""
Channel Gateway - FastAPI 服务
承载 Webhook 回调路由、网关状态接口，并在生命周期内运行所有通道连接器
"""

# ==================== 标准库 ====================
import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Union

# ==================== 第三方库 ====================
from fastapi import FastAPI
from fastapi.responses import JSONResponse


class UnicodeJSONResponse(JSONResponse):
    """JSONResponse that outputs Chinese characters directly (no \\uXXXX escapes)."""

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


# ==================== 本地模块 ====================
from core.gateway import ConfigError, create_gateway, load_gateway_config
from core.gateway.engine import ResponseEngine
from core.gateway.types import GatewayConfig
from logger import get_logger
from routers.gateway import build_webhook_router, router as gateway_router, set_channel_manager

logger = get_logger("main")

# ==================== 常量定义 ====================

APP_NAME = "Channel Gateway API"
APP_DESCRIPTION = "企业 IM 通道网关（钉钉 Stream / 企业微信回调）"
APP_VERSION = "0.1.0"


# ==================== 启动辅助函数 ====================

async def _load_config(config: Optional[Union[GatewayConfig, str, Path]]) -> Optional[GatewayConfig]:
    """加载网关配置；配置缺失或无效时以无通道模式启动"""
    if isinstance(config, GatewayConfig):
        return config
    try:
        return await load_gateway_config(config or os.getenv("GATEWAY_CONFIG") or None)
    except ConfigError as e:
        print(f"⚠️ 网关配置加载失败: {e}")
        return None


def create_app(
    config: Optional[Union[GatewayConfig, str, Path]] = None,
    engine: Optional[ResponseEngine] = None,
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        config: GatewayConfig 实例或配置文件路径（默认 config/gateway.yaml）
        engine: 自定义 AI 引擎（默认按配置创建）
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        # ===== 启动阶段 =====
        print("🚀 Channel Gateway 启动中...")

        gateway_config = await _load_config(config)
        gateway = None
        if gateway_config is not None:
            gateway = await create_gateway(gateway_config, engine=engine)
            app.include_router(build_webhook_router(gateway.webhook_routes))
            set_channel_manager(gateway.manager)
            await gateway.start()
            print(f"✅ 已启动 {len(gateway.manager.connectors())} 个通道")
            for channel_id, error in gateway.manager.config_errors.items():
                print(f"⚠️ 通道 {channel_id} 配置无效: {error}")
        app.state.gateway = gateway

        yield

        # ===== 关闭阶段 =====
        print("🛑 正在关闭网关...")
        if gateway is not None:
            await gateway.stop()
        set_channel_manager(None)
        print("👋 Channel Gateway 已关闭")

    app = FastAPI(
        title=APP_NAME,
        description=APP_DESCRIPTION,
        version=APP_VERSION,
        lifespan=lifespan,
        default_response_class=UnicodeJSONResponse,
    )

    # ==================== 路由注册 ====================

    app.include_router(gateway_router)

    # ==================== 基础路由 ====================

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """根路径 - API 信息"""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "status": "/api/v1/gateway/status",
                "channels": "/api/v1/gateway/channels",
                "doctor": "/api/v1/gateway/doctor",
            },
        }

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Readiness probe: 200 once the server is accepting connections."""
        gateway = getattr(app.state, "gateway", None)
        return {
            "status": "ok",
            "version": APP_VERSION,
            "channels": gateway.manager.get_all_status() if gateway else {},
        }

    return app


app = create_app()


# ==================== 启动入口 ====================

def run(config: Optional[GatewayConfig] = None, config_path: Optional[str] = None) -> None:
    """以 uvicorn 运行网关（cli.py start 调用）"""
    import uvicorn

    server = config.server if config else None
    host = server.host if server else "0.0.0.0"
    port = server.port if server else 8080

    print("\n" + "=" * 60)
    print(f"🚀 启动 {APP_NAME}")
    print("=" * 60)
    print(f"📍 访问地址: http://localhost:{port}")
    print(f"📚 API 文档: http://localhost:{port}/docs")
    print("=" * 60 + "\n")

    uvicorn.run(
        create_app(config or config_path),
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
