"""
Channel gateway command line

Usage:
    python cli.py start  [--config PATH]   # serve webhooks + run all connectors
    python cli.py list   [--config PATH]   # list configured channels, no network
    python cli.py doctor [--config PATH]   # credential / connectivity checks

doctor exits with status 1 if any channel is unhealthy.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from core.gateway import ConfigError, create_gateway, load_gateway_config
from core.gateway.loader import GATEWAY_CONFIG_PATH
from core.gateway.types import GatewayConfig
from logger import set_level


def _print_config_errors(config: GatewayConfig) -> None:
    for channel_id, error in config.errors.items():
        print(f"  ✗ {channel_id:<12} invalid    {error}")


async def cmd_list(config_path: Optional[str]) -> int:
    config = await load_gateway_config(config_path)

    print(f"Channels ({len(config.channels)} valid, {len(config.errors)} invalid):")
    for channel in config.channels.values():
        allow = "*" if channel.allows_everyone else (", ".join(sorted(channel.allow_list)) or "(nobody)")
        status = "enabled" if channel.enabled else "disabled"
        extra = f" path={channel.callback_path}" if hasattr(channel, "callback_path") else ""
        print(f"  • {channel.id:<12} {channel.platform:<9} {status:<9} allow={allow}{extra}")
    _print_config_errors(config)
    return 0


async def cmd_doctor(config_path: Optional[str]) -> int:
    config = await load_gateway_config(config_path)
    gateway = await create_gateway(config)
    try:
        reports = await gateway.manager.doctor()
    finally:
        await gateway.stop()

    if not reports:
        print("No channels configured")
        return 1

    for report in reports:
        mark = "✓" if report.healthy else "✗"
        print(f"  {mark} {report.channel_id:<12} {report.platform:<9} {report.detail}")

    return 0 if all(r.healthy for r in reports) else 1


def cmd_start(config_path: Optional[str]) -> int:
    from main import run

    config = asyncio.run(load_gateway_config(config_path))
    run(config=config)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Enterprise channel gateway")
    parser.add_argument(
        "command",
        choices=["start", "list", "doctor"],
        help="start: run the gateway; list: show channels; doctor: check credentials",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to gateway.yaml (default: {GATEWAY_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Override GATEWAY_LOG_LEVEL",
    )
    args = parser.parse_args(argv)
    if args.log_level:
        set_level(args.log_level)

    try:
        if args.command == "start":
            return cmd_start(args.config)
        if args.command == "list":
            return asyncio.run(cmd_list(args.config))
        return asyncio.run(cmd_doctor(args.config))
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
