"""
Channel manager

Manages the lifecycle of all registered connectors: start, stop, status
reporting, and the doctor checks. Each connector runs in its own task so
one channel's failures and backoff never block another.
"""

import asyncio
from typing import Any, Dict, List, Optional

from logger import get_logger

from core.gateway.channel import Connector, OnMessageCallback
from core.gateway.types import ChannelHealth, ConnectorState

logger = get_logger("gateway.manager")


class ChannelManager:
    """
    Manages all registered connectors.

    Responsibilities:
    - Register connectors
    - Start / stop all channels
    - Route inbound messages to the dispatcher
    - Report channel health and configuration errors
    """

    def __init__(self, config_errors: Optional[Dict[str, str]] = None) -> None:
        self._channels: Dict[str, Connector] = {}
        self._on_message: Optional[OnMessageCallback] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._config_errors: Dict[str, str] = dict(config_errors or {})

    def register(self, connector: Connector) -> None:
        """
        Register a connector.

        Args:
            connector: Connector implementation
        """
        channel_id = connector.id
        if channel_id in self._channels:
            logger.warning(
                "Channel already registered, replacing",
                extra={"channel": channel_id},
            )
        self._channels[channel_id] = connector
        logger.info("Channel registered", extra={"channel": channel_id, "platform": connector.platform})

    def add_config_error(self, channel_id: str, error: str) -> None:
        self._config_errors[channel_id] = error

    @property
    def config_errors(self) -> Dict[str, str]:
        return dict(self._config_errors)

    def set_message_handler(self, handler: OnMessageCallback) -> None:
        """
        Set the inbound message handler (typically Dispatcher.handle_inbound).

        Args:
            handler: async callback for inbound messages
        """
        self._on_message = handler

    async def start_all(self) -> None:
        """Start every registered connector in its own task."""
        if not self._on_message:
            raise RuntimeError("Message handler not set. Call set_message_handler() first.")

        for channel_id, connector in self._channels.items():
            task = self._tasks.get(channel_id)
            if task is not None and not task.done():
                continue
            self._tasks[channel_id] = asyncio.create_task(
                self._run_connector(connector), name=f"channel_{channel_id}"
            )

        # Let webhook connectors flip to listening before callers inspect status
        await asyncio.sleep(0)

        logger.info(
            "Gateway channels started",
            extra={"started": list(self._tasks), "config_errors": list(self._config_errors)},
        )
        if not self._channels:
            logger.warning("No channels started")

    async def _run_connector(self, connector: Connector) -> None:
        try:
            await connector.start(self._on_message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Channel task crashed",
                extra={"channel": connector.id, "error": str(e)},
                exc_info=True,
            )

    async def stop_all(self) -> None:
        """Stop all channels gracefully, then reap their tasks."""
        for channel_id, connector in self._channels.items():
            try:
                await connector.stop()
                logger.info("Channel stopped", extra={"channel": channel_id})
            except Exception as e:
                logger.warning(
                    "Error stopping channel",
                    extra={"channel": channel_id, "error": str(e)},
                )

        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=5.0)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        logger.info("All gateway channels stopped")

    def get_connector(self, channel_id: str) -> Optional[Connector]:
        """Get a registered connector by channel ID."""
        return self._channels.get(channel_id)

    def connectors(self) -> List[Connector]:
        return list(self._channels.values())

    def get_all_status(self) -> Dict[str, str]:
        """
        Get state of all registered channels.

        Returns:
            Dict mapping channel_id to state string
        """
        return {
            channel_id: connector.health().state.value
            for channel_id, connector in self._channels.items()
        }

    def list_channels(self) -> List[Dict[str, Any]]:
        """
        List registered channels plus channels rejected by configuration.

        Returns:
            List of channel info dicts
        """
        result: List[Dict[str, Any]] = []
        for connector in self._channels.values():
            health = connector.health()
            result.append(
                {
                    "id": connector.id,
                    "platform": connector.platform,
                    "state": health.state.value,
                    "healthy": health.healthy,
                    "allow_all": connector.config.allows_everyone,
                    "allowed_users": sorted(connector.config.allow_list),
                }
            )
        for channel_id, error in self._config_errors.items():
            result.append(
                {
                    "id": channel_id,
                    "platform": None,
                    "state": "invalid",
                    "healthy": False,
                    "error": error,
                }
            )
        return result

    async def doctor(self) -> List[ChannelHealth]:
        """Run credential / connectivity checks for every channel concurrently."""
        connectors = list(self._channels.values())
        results = await asyncio.gather(
            *(connector.check() for connector in connectors), return_exceptions=True
        )

        reports: List[ChannelHealth] = []
        for connector, result in zip(connectors, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Doctor check raised",
                    extra={"channel": connector.id, "error": str(result)},
                )
                result = ChannelHealth(
                    channel_id=connector.id,
                    platform=connector.platform,
                    state=connector.health().state,
                    healthy=False,
                    detail=f"check raised {type(result).__name__}: {result}",
                    last_error=str(result),
                )
            reports.append(result)

        for channel_id, error in self._config_errors.items():
            reports.append(
                ChannelHealth(
                    channel_id=channel_id,
                    platform="unknown",
                    state=ConnectorState.IDLE,
                    healthy=False,
                    detail=f"ConfigError: {error}",
                    last_error=error,
                )
            )
        return reports
