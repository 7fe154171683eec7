"""
DingTalk channel connector

Uses DingTalk Stream mode: the gateway opens an outbound WebSocket, so
no public IP / callback URL is required.

Lifecycle (explicit state machine):

    idle -> connecting -> connected -> backoff -> connecting -> ...
                                   \\-> stopped (stop() or auth retries exhausted)

Reconnect delays follow a capped exponential backoff that resets after
every successful connection.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from logger import clear_message_context, get_logger, set_message_context

from core.gateway.access import check_sender
from core.gateway.channel import OnMessageCallback
from core.gateway.channels.dingtalk_api import (
    FRAME_EVENT,
    FRAME_SYSTEM,
    TOPIC_DISCONNECT,
    TOPIC_PING,
    DingTalkApi,
    StreamFrame,
    build_ack_frame,
    build_reply_frame,
    parse_frame,
    parse_robot_message,
)
from core.gateway.errors import AuthError, GatewayError, ReplyTimeoutError, TransportError
from core.gateway.token_cache import TokenCache
from core.gateway.types import (
    ChannelHealth,
    ConnectorState,
    DingTalkChannelConfig,
    InboundMessage,
    OutboundMessage,
)
from infra.resilience import ExponentialBackoff, run_with_timeout

logger = get_logger("gateway.channels.dingtalk")

WebSocketConnect = Callable[[str], Awaitable[Any]]
SleepFunc = Callable[[float], Awaitable[None]]

UNSUPPORTED_MEDIA_HINT = (
    "Received a {kind} message. This channel only accepts text for now, "
    "please describe it in words."
)


class DingTalkChannel:
    """
    DingTalk Stream connector.

    Args:
        config: validated DingTalk channel config
        token_cache: shared gateway token cache
        api: REST client (handshake, token, session webhook)
        connect: coroutine opening a WebSocket for a URL (injectable for tests)
        sleep: backoff sleep (injectable for tests)
    """

    def __init__(
        self,
        config: DingTalkChannelConfig,
        token_cache: TokenCache,
        api: Optional[DingTalkApi] = None,
        connect: Optional[WebSocketConnect] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._token_cache = token_cache
        self._api = api or DingTalkApi(
            config.client_id,
            config.client_secret,
            channel_id=config.id,
            timeout=config.handshake_timeout,
        )
        self._connect = connect or self._default_connect
        self._sleep = sleep
        self._clock = clock

        self._state = ConnectorState.IDLE
        self._stop_event = asyncio.Event()
        self._backoff = ExponentialBackoff(config.backoff_initial, config.backoff_max)
        self._ws: Optional[Any] = None
        self._send_lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._pending: Dict[str, float] = {}
        self._replied: Set[str] = set()
        self._on_message: Optional[OnMessageCallback] = None

        self._consecutive_failures = 0
        self._auth_failures = 0
        self._last_error: Optional[str] = None
        self._failed = False

        token_cache.register(config.id, self._api.fetch_token)

    # ==================== Connector protocol ====================

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def platform(self) -> str:
        return "dingtalk"

    @property
    def config(self) -> DingTalkChannelConfig:
        return self._config

    @property
    def state(self) -> ConnectorState:
        return self._state

    def health(self) -> ChannelHealth:
        healthy = self._state == ConnectorState.CONNECTED
        if self._failed:
            detail = "credentials rejected, channel stopped"
        elif healthy:
            detail = "stream connected"
        else:
            detail = f"stream {self._state.value}"
        return ChannelHealth(
            channel_id=self.id,
            platform=self.platform,
            state=self._state,
            healthy=healthy,
            detail=detail,
            consecutive_failures=self._consecutive_failures,
            last_error=self._last_error,
        )

    async def start(self, on_message: OnMessageCallback) -> None:
        """Run the connect / serve / backoff loop until stop() is called."""
        self._on_message = on_message
        self._stop_event.clear()
        self._failed = False
        self._auth_failures = 0
        self._backoff.reset()

        logger.info("Starting DingTalk channel (Stream mode)", extra={"channel": self.id})

        while not self._stop_event.is_set():
            self._set_state(ConnectorState.CONNECTING)
            try:
                await self._connect_and_serve()
                reason = "connection closed"
            except AuthError as e:
                reason = str(e)
                if not e.transient:
                    self._token_cache.invalidate(self.id)
                    self._auth_failures += 1
                    if self._auth_failures > self._config.max_auth_retries:
                        self._mark_failed(e)
                        break
            except (GatewayError, WebSocketException, OSError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
            except asyncio.CancelledError:
                self._set_state(ConnectorState.STOPPED)
                raise
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.error(
                    "DingTalk stream loop unexpected error",
                    extra={"channel": self.id, "error": reason},
                    exc_info=True,
                )
            finally:
                await self._teardown_connection()

            if self._stop_event.is_set():
                break

            self._consecutive_failures += 1
            self._last_error = reason
            delay = self._backoff.next_delay()
            self._set_state(ConnectorState.BACKOFF)
            logger.warning(
                "DingTalk stream disconnected, reconnecting",
                extra={
                    "channel": self.id,
                    "reason": reason,
                    "backoff_seconds": delay,
                    "consecutive_failures": self._consecutive_failures,
                },
            )
            await self._wait_backoff(delay)

        if self._state != ConnectorState.STOPPED:
            self._set_state(ConnectorState.STOPPED)
        logger.info("DingTalk channel loop exited", extra={"channel": self.id})

    async def stop(self) -> None:
        """Close the socket (close frame), stop reconnecting and cancel the heartbeat."""
        self._stop_event.set()
        await self._teardown_connection()

        tasks = list(self._dispatch_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._dispatch_tasks.clear()
        self._pending.clear()
        self._replied.clear()

        self._set_state(ConnectorState.STOPPED)
        await self._api.aclose()
        logger.info("DingTalk channel stopped", extra={"channel": self.id})

    async def send(self, message: OutboundMessage) -> None:
        """
        Write a reply frame for ``message.correlation_id`` over the open socket.

        Raises:
            TransportError: no open connection, or the socket failed mid-send
            ReplyTimeoutError: the reply window since receipt has elapsed
        """
        timeout = self._remaining_window(message.correlation_id)
        if timeout <= 0:
            raise ReplyTimeoutError(
                f"Reply window of {self._config.reply_timeout}s exceeded", self.id
            )

        ws = self._ws
        if ws is None or self._state != ConnectorState.CONNECTED:
            raise TransportError("No open DingTalk stream connection", self.id)

        frame = build_reply_frame(message.correlation_id, message.content)
        try:
            await run_with_timeout(
                self._send_frame(ws, frame),
                timeout,
                operation="dingtalk.send",
                error_factory=lambda msg: ReplyTimeoutError(msg, self.id),
            )
        except ConnectionClosed as e:
            raise TransportError(f"Stream closed while sending reply: {e}", self.id) from e

        if message.correlation_id in self._pending:
            self._replied.add(message.correlation_id)

        if message.reply_webhook and self._config.session_webhook_reply:
            try:
                await run_with_timeout(
                    self._api.send_via_session_webhook(message.reply_webhook, message.content),
                    self._remaining_window(message.correlation_id),
                    operation="dingtalk.session_webhook",
                    error_factory=lambda msg: ReplyTimeoutError(msg, self.id),
                )
            except GatewayError as e:
                logger.warning(
                    "Session webhook reply failed",
                    extra={"channel": self.id, "corr": message.correlation_id, "error": str(e)},
                )

        logger.info(
            "Reply sent",
            extra={"channel": self.id, "corr": message.correlation_id, "length": len(message.content)},
        )

    async def check(self) -> ChannelHealth:
        """Token fetch plus connection handshake, without opening the socket."""
        try:
            token = await self._token_cache.get_or_refresh(self.id)
            endpoint = await run_with_timeout(
                self._api.open_connection(token.value),
                self._config.handshake_timeout,
                operation="dingtalk.handshake",
                error_factory=lambda msg: TransportError(msg, self.id),
            )
        except GatewayError as e:
            return ChannelHealth(
                channel_id=self.id,
                platform=self.platform,
                state=self._state,
                healthy=False,
                detail=f"{type(e).__name__}: {e}",
                last_error=str(e),
            )
        return ChannelHealth(
            channel_id=self.id,
            platform=self.platform,
            state=self._state,
            healthy=True,
            detail=f"token ok, handshake ok ({endpoint.endpoint})",
        )

    # ==================== Connection ====================

    async def _default_connect(self, url: str) -> Any:
        # Heartbeat is driven by this connector, not the library keepalive
        return await websockets.connect(
            url,
            ping_interval=None,
            open_timeout=self._config.handshake_timeout,
        )

    async def _connect_and_serve(self) -> None:
        token = await self._token_cache.get_or_refresh(self.id)
        try:
            endpoint = await run_with_timeout(
                self._api.open_connection(token.value),
                self._config.handshake_timeout,
                operation="dingtalk.handshake",
                error_factory=lambda msg: TransportError(msg, self.id),
            )
        except AuthError:
            self._token_cache.invalidate(self.id)
            raise

        ws = await run_with_timeout(
            self._connect(endpoint.url),
            self._config.handshake_timeout,
            operation="dingtalk.websocket_open",
            error_factory=lambda msg: TransportError(msg, self.id),
        )
        if self._stop_event.is_set():
            await ws.close()
            return

        self._ws = ws
        self._set_state(ConnectorState.CONNECTED)
        self._backoff.reset()
        self._auth_failures = 0
        self._consecutive_failures = 0
        self._last_error = None
        logger.info("DingTalk stream connected", extra={"channel": self.id})

        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(ws), name=f"{self.id}_heartbeat"
        )
        try:
            async for raw in ws:
                if not await self._handle_frame(raw):
                    break
        except ConnectionClosed as e:
            raise TransportError(f"Stream closed: {e}", self.id) from e

    async def _teardown_connection(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug("Error closing stream socket", extra={"channel": self.id, "error": str(e)})

    async def _heartbeat_loop(self, ws: Any) -> None:
        """Ping every heartbeat_interval; close the socket if no pong arrives in time."""
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, self._config.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Heartbeat timed out, closing stream",
                    extra={"channel": self.id, "timeout_seconds": self._config.heartbeat_timeout},
                )
                await ws.close()
                return
            except (ConnectionClosed, OSError):
                return

    async def _wait_backoff(self, delay: float) -> None:
        """Sleep ``delay`` seconds, returning early if stop() is called."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                if not task.done():
                    task.cancel()

    # ==================== Frames ====================

    async def _handle_frame(self, raw: Any) -> bool:
        """Handle one inbound frame. Returns False when the server asked to disconnect."""
        try:
            frame = parse_frame(raw)
        except ValueError as e:
            logger.warning("Dropping malformed stream frame", extra={"channel": self.id, "error": str(e)})
            return True

        if frame.type.upper() == FRAME_SYSTEM:
            if frame.topic == TOPIC_PING:
                await self._send_frame(self._ws, build_ack_frame(frame.message_id, frame.data))
            elif frame.topic == TOPIC_DISCONNECT:
                logger.info("Server requested disconnect", extra={"channel": self.id})
                return False
            else:
                logger.debug("Ignoring system frame", extra={"channel": self.id, "topic": frame.topic})
            return True

        if frame.type.upper() == FRAME_EVENT:
            await self._send_frame(self._ws, build_ack_frame(frame.message_id, {"status": "SUCCESS"}))
            return True

        if frame.is_chat:
            await self._handle_chat(frame)
            return True

        logger.warning("Unknown stream frame type", extra={"channel": self.id, "frame_type": frame.type})
        return True

    async def _handle_chat(self, frame: StreamFrame) -> None:
        try:
            robot = parse_robot_message(frame.payload())
        except ValueError as e:
            logger.error(
                "Failed to parse bot message",
                extra={"channel": self.id, "corr": frame.message_id, "error": str(e)},
            )
            await self._send_frame(self._ws, build_ack_frame(frame.message_id, code=500, message="Bad payload"))
            return

        if not check_sender(self.id, robot.sender_id, self._config.allow_list):
            await self._send_frame(self._ws, build_ack_frame(frame.message_id))
            return

        if robot.msg_type != "text":
            logger.info(
                "Non-text bot message acknowledged, not forwarded",
                extra={"channel": self.id, "msg_type": robot.msg_type, "corr": frame.message_id},
            )
            await self._send_frame(self._ws, build_ack_frame(frame.message_id))
            if robot.session_webhook and self._config.session_webhook_reply:
                self._track(self._send_hint(robot.session_webhook, robot.msg_type))
            return

        if not robot.text:
            logger.debug("Skipping empty bot message", extra={"channel": self.id})
            await self._send_frame(self._ws, build_ack_frame(frame.message_id))
            return

        received_at = self._clock()
        inbound = InboundMessage(
            channel_id=self.id,
            sender_id=robot.sender_id,
            sender_name=robot.sender_nick,
            conversation_id=robot.conversation_id,
            conversation_type=robot.conversation_type,
            text=robot.text,
            correlation_id=frame.message_id,
            received_at=received_at,
            reply_webhook=robot.session_webhook,
        )
        self._pending[frame.message_id] = received_at
        self._track(self._dispatch(inbound))

    async def _dispatch(self, msg: InboundMessage) -> None:
        set_message_context(msg.channel_id, msg.sender_id, msg.correlation_id)
        try:
            if self._on_message:
                await self._on_message(msg)
        except Exception as e:
            logger.error(
                "Error handling DingTalk message",
                extra={"channel": self.id, "corr": msg.correlation_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            if msg.correlation_id in self._replied:
                self._replied.discard(msg.correlation_id)
            else:
                await self._ack_unanswered(msg.correlation_id)
            self._pending.pop(msg.correlation_id, None)
            clear_message_context()

    async def _ack_unanswered(self, correlation_id: str) -> None:
        """Plain ack for a callback that produced no reply frame."""
        ws = self._ws
        if ws is None:
            return
        try:
            await self._send_frame(ws, build_ack_frame(correlation_id))
        except (GatewayError, WebSocketException, OSError) as e:
            logger.warning(
                "Failed to ack unanswered callback",
                extra={"channel": self.id, "corr": correlation_id, "error": str(e)},
            )

    async def _send_hint(self, webhook: str, kind: str) -> None:
        try:
            await self._api.send_via_session_webhook(webhook, UNSUPPORTED_MEDIA_HINT.format(kind=kind))
        except GatewayError as e:
            logger.warning("Failed to send unsupported-media hint", extra={"channel": self.id, "error": str(e)})

    def _track(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _send_frame(self, ws: Any, frame: str) -> None:
        if ws is None:
            raise TransportError("No open DingTalk stream connection", self.id)
        async with self._send_lock:
            await ws.send(frame)

    def _remaining_window(self, correlation_id: str) -> float:
        received_at = self._pending.get(correlation_id)
        if received_at is None:
            return self._config.reply_timeout
        return self._config.reply_timeout - (self._clock() - received_at)

    # ==================== State ====================

    def _set_state(self, state: ConnectorState) -> None:
        if state != self._state:
            logger.debug(
                "Connector state change",
                extra={"channel": self.id, "from": self._state.value, "to": state.value},
            )
            self._state = state

    def _mark_failed(self, error: AuthError) -> None:
        self._failed = True
        self._last_error = str(error)
        self._set_state(ConnectorState.STOPPED)
        logger.error(
            "DingTalk credentials rejected, giving up",
            extra={
                "channel": self.id,
                "auth_failures": self._auth_failures,
                "max_auth_retries": self._config.max_auth_retries,
                "error": str(error),
            },
        )
