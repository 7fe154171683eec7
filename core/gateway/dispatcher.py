"""
Gateway dispatcher

Fan-in point for every connector: re-checks the sender, calls the AI
engine, and delivers the reply back through the originating connector.

A semaphore per channel limits how many engine calls one channel can
run at once, so a burst on one platform never starves another.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Dict, Optional

from logger import get_logger, log_execution_time

from core.gateway.access import check_sender
from core.gateway.delivery import deliver
from core.gateway.engine import ResponseEngine
from core.gateway.errors import EngineError, GatewayError, ReplyTimeoutError
from core.gateway.types import InboundMessage, OutboundMessage
from infra.resilience import DEFAULT_TIMEOUTS, run_with_timeout

if TYPE_CHECKING:
    from core.gateway.manager import ChannelManager

logger = get_logger("gateway.dispatcher")

DEFAULT_MAX_CONCURRENCY_PER_CHANNEL = 2


class Dispatcher:
    """
    Routes inbound messages to the engine and replies back to their channel.

    Flow:
    1. Receive InboundMessage from a connector
    2. Re-check the sender against the channel's allow-list
    3. Call ResponseEngine.respond() (bounded by engine_timeout)
    4. Build an OutboundMessage for the same channel / conversation
    5. Deliver it through the connector (chunked by delivery.deliver)
    """

    def __init__(
        self,
        channel_manager: "ChannelManager",
        engine: ResponseEngine,
        engine_timeout: float = DEFAULT_TIMEOUTS.engine_timeout,
        max_concurrency_per_channel: int = DEFAULT_MAX_CONCURRENCY_PER_CHANNEL,
        fallback_reply: Optional[str] = None,
    ) -> None:
        self._channel_manager = channel_manager
        self._engine = engine
        self._engine_timeout = engine_timeout
        self._max_concurrency = max_concurrency_per_channel
        self._fallback_reply = fallback_reply
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

        logger.info(
            "Dispatcher initialized",
            extra={
                "engine": type(engine).__name__,
                "engine_timeout": engine_timeout,
                "max_concurrency_per_channel": max_concurrency_per_channel,
            },
        )

    def _semaphore(self, channel_id: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(channel_id)
        if sem is None:
            sem = asyncio.Semaphore(self._max_concurrency)
            self._semaphores[channel_id] = sem
        return sem

    async def handle_inbound(self, msg: InboundMessage) -> Optional[OutboundMessage]:
        """
        Handle an inbound message from any channel.

        This is the message callback handed to every connector. Failures are
        logged and contained to this message.

        Returns:
            the delivered OutboundMessage, or None when nothing was sent
        """
        start_time = time.time()
        channel_id = msg.channel_id

        connector = self._channel_manager.get_connector(channel_id)
        if connector is None:
            logger.error("Connector not found for inbound message", extra={"channel": channel_id})
            return None

        if not check_sender(channel_id, msg.sender_id, connector.config.allow_list):
            return None

        logger.info(
            "Inbound message received",
            extra={
                "channel": channel_id,
                "sender": msg.sender_name or msg.sender_id,
                "conversation_id": msg.conversation_id,
                "text_preview": msg.text[:50],
            },
        )

        async with self._semaphore(channel_id):
            reply = await self._call_engine(msg)
            if reply is None:
                return None

            reply = reply.strip()
            if not reply:
                logger.warning("Empty response from engine, nothing to deliver", extra={"channel": channel_id})
                return None

            outbound = OutboundMessage(
                channel_id=channel_id,
                conversation_id=msg.conversation_id,
                content=reply,
                correlation_id=msg.correlation_id,
                recipient_id=msg.sender_id,
                reply_webhook=msg.reply_webhook,
            )

            try:
                await deliver(connector, outbound)
            except ReplyTimeoutError as e:
                logger.warning(
                    "Reply window exceeded, reply dropped",
                    extra={"channel": channel_id, "corr": msg.correlation_id, "error": str(e)},
                )
                return None
            except GatewayError as e:
                logger.error(
                    "Failed to deliver reply",
                    extra={"channel": channel_id, "corr": msg.correlation_id, "error": str(e)},
                )
                return None
            except Exception as e:
                logger.error(
                    "Unexpected error delivering reply",
                    extra={"channel": channel_id, "corr": msg.correlation_id, "error": str(e)},
                    exc_info=True,
                )
                return None

        logger.info(
            "Inbound message handled",
            extra={
                "channel": channel_id,
                "response_length": len(outbound.content),
                "elapsed_seconds": round(time.time() - start_time, 2),
            },
        )
        return outbound

    async def _call_engine(self, msg: InboundMessage) -> Optional[str]:
        """Engine reply, the fallback text on failure, or None."""
        try:
            with log_execution_time("engine.respond", logger):
                return await run_with_timeout(
                    self._engine.respond(msg),
                    self._engine_timeout,
                    operation="engine.respond",
                    error_factory=lambda m: EngineError(m, msg.channel_id),
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Engine call failed",
                extra={"channel": msg.channel_id, "corr": msg.correlation_id, "error": str(e)},
                exc_info=not isinstance(e, GatewayError),
            )
            if self._fallback_reply:
                return self._fallback_reply
            return None
