"""
Gateway configuration loader and factory

Loads gateway.yaml, resolves environment variables, validates each
channel independently, creates connectors, and wires up the dispatcher.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import aiofiles
import yaml
from pydantic import ValidationError

from logger import get_logger

from core.gateway.channel import Connector
from core.gateway.dispatcher import Dispatcher
from core.gateway.engine import ResponseEngine, create_engine
from core.gateway.errors import ConfigError
from core.gateway.manager import ChannelManager
from core.gateway.token_cache import TokenCache
from core.gateway.types import (
    ChannelConfig,
    DingTalkChannelConfig,
    EngineSettings,
    GatewayConfig,
    ServerSettings,
    WeComChannelConfig,
)
from infra.resilience import RetryConfig, set_retry_config

logger = get_logger("gateway.loader")

# Default config path (overridable with GATEWAY_CONFIG)
GATEWAY_CONFIG_PATH = Path(os.environ.get("GATEWAY_CONFIG", "config/gateway.yaml"))

# Regex for ${VAR_NAME} environment variable references
_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")

PLATFORM_CONFIGS: Dict[str, Type[ChannelConfig]] = {
    "dingtalk": DingTalkChannelConfig,
    "wecom": WeComChannelConfig,
}


def _resolve_env_vars(value: Any) -> Any:
    """
    Recursively resolve ${VAR_NAME} references in config values.

    Args:
        value: config value (str, dict, list, or primitive)

    Returns:
        value with env vars resolved
    """
    if isinstance(value, str):
        def _replace(match):
            var_name = match.group(1)
            env_value = os.environ.get(var_name, "")
            if not env_value:
                logger.debug(f"Environment variable {var_name} not set")
            return env_value
        return _ENV_VAR_PATTERN.sub(_replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "config"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


def build_channel_config(channel_id: str, data: Dict[str, Any]) -> ChannelConfig:
    """
    Validate one channel section.

    ``platform`` defaults to the channel id.

    Raises:
        ConfigError: unknown platform or invalid / missing fields
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Channel '{channel_id}' must be a mapping", channel_id)

    params = {k: v for k, v in data.items() if k != "id"}
    platform = str(params.pop("platform", channel_id))
    config_cls = PLATFORM_CONFIGS.get(platform)
    if config_cls is None:
        raise ConfigError(f"Unknown platform '{platform}' for channel '{channel_id}'", channel_id)

    try:
        config = config_cls(id=channel_id, platform=platform, **params)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid config for channel '{channel_id}': {_format_validation_error(e)}", channel_id
        ) from e

    if not config.allow_list:
        logger.warning(
            "Channel allow-list is empty, every sender will be rejected",
            extra={"channel": channel_id},
        )
    return config


def parse_gateway_config(raw: Dict[str, Any]) -> GatewayConfig:
    """
    Build a GatewayConfig from an already env-resolved dict.

    Invalid channels are collected in ``errors``; valid channels are kept.
    """
    gateway_section = raw.get("gateway") or {}

    retry_section = gateway_section.get("retry")
    if isinstance(retry_section, dict):
        set_retry_config(
            RetryConfig(
                **{k: v for k, v in retry_section.items() if k in ("max_retries", "base_delay", "max_delay")}
            )
        )

    channels: Dict[str, ChannelConfig] = {}
    errors: Dict[str, str] = {}
    for channel_id, channel_data in (raw.get("channels") or {}).items():
        channel_id = str(channel_id)
        try:
            channels[channel_id] = build_channel_config(channel_id, channel_data or {})
        except ConfigError as e:
            errors[channel_id] = str(e)
            logger.error("Channel config invalid", extra={"channel": channel_id, "error": str(e)})

    try:
        config = GatewayConfig(
            channels=channels,
            errors=errors,
            engine=EngineSettings(**(gateway_section.get("engine") or {})),
            server=ServerSettings(**(gateway_section.get("server") or {})),
            max_concurrency_per_channel=gateway_section.get("max_concurrency_per_channel", 2),
            fallback_reply=gateway_section.get("fallback_reply"),
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid gateway section: {_format_validation_error(e)}") from e

    logger.info(
        "Gateway config loaded",
        extra={
            "channels": {k: v.enabled for k, v in config.channels.items()},
            "invalid_channels": list(errors),
        },
    )
    return config


async def load_gateway_config(
    config_path: Optional[Union[str, Path]] = None,
) -> GatewayConfig:
    """
    Load and parse gateway configuration from YAML.

    Args:
        config_path: path to gateway.yaml (defaults to config/gateway.yaml)

    Raises:
        ConfigError: file missing or not valid YAML
    """
    path = Path(config_path) if config_path else GATEWAY_CONFIG_PATH

    if not path.exists():
        raise ConfigError(f"Gateway config not found: {path}")

    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
            raw = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse gateway config {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Gateway config {path} must be a mapping")

    # Resolve environment variables
    raw = _resolve_env_vars(raw)
    return parse_gateway_config(raw)


def _create_connector(config: ChannelConfig, token_cache: TokenCache) -> Connector:
    """
    Create a connector instance for a validated channel config.

    Raises:
        ConfigError: connector rejected the config (e.g. undecodable key)
    """
    if isinstance(config, DingTalkChannelConfig):
        from core.gateway.channels.dingtalk import DingTalkChannel
        try:
            return DingTalkChannel(config, token_cache)
        except ValueError as e:
            raise ConfigError(str(e), config.id) from e

    if isinstance(config, WeComChannelConfig):
        from core.gateway.channels.wecom import WeComChannel
        return WeComChannel(config, token_cache)

    raise ConfigError(f"No connector for platform '{config.platform}'", config.id)


@dataclass
class Gateway:
    """Wired gateway: connectors, dispatcher and the shared token cache."""

    config: GatewayConfig
    manager: ChannelManager
    dispatcher: Dispatcher
    token_cache: TokenCache
    webhook_routes: Dict[str, Connector] = field(default_factory=dict)

    async def start(self) -> None:
        await self.manager.start_all()

    async def stop(self) -> None:
        await self.manager.stop_all()
        self.token_cache.clear()


async def create_gateway(
    config: Optional[GatewayConfig] = None,
    engine: Optional[ResponseEngine] = None,
    token_cache: Optional[TokenCache] = None,
) -> Gateway:
    """
    Create and configure the gateway from config.

    Channels whose connector cannot be built are reported as config
    errors; the remaining channels are still registered.
    """
    if config is None:
        config = await load_gateway_config()

    token_cache = token_cache or TokenCache()
    manager = ChannelManager(config_errors=config.errors)
    dispatcher = Dispatcher(
        channel_manager=manager,
        engine=engine or create_engine(config.engine),
        engine_timeout=config.engine.timeout,
        max_concurrency_per_channel=config.max_concurrency_per_channel,
        fallback_reply=config.fallback_reply,
    )

    registered: List[str] = []
    webhook_routes: Dict[str, Connector] = {}
    for channel_config in config.enabled_channels():
        try:
            connector = _create_connector(channel_config, token_cache)
        except ConfigError as e:
            manager.add_config_error(channel_config.id, str(e))
            logger.error("Channel skipped", extra={"channel": channel_config.id, "error": str(e)})
            continue

        callback_path = getattr(connector, "callback_path", None)
        if callback_path:
            if callback_path in webhook_routes:
                manager.add_config_error(
                    channel_config.id, f"callback_path '{callback_path}' already used by another channel"
                )
                continue
            webhook_routes[callback_path] = connector

        manager.register(connector)
        registered.append(channel_config.id)

    if not registered:
        logger.warning("No channels are configured/enabled")

    # Wire up the message handler
    manager.set_message_handler(dispatcher.handle_inbound)

    logger.info(
        "Gateway created",
        extra={"channels": registered, "webhook_paths": list(webhook_routes)},
    )

    return Gateway(
        config=config,
        manager=manager,
        dispatcher=dispatcher,
        token_cache=token_cache,
        webhook_routes=webhook_routes,
    )
