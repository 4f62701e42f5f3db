"""
WebSocket connection manager for live subscriptions.

Authenticates channels from their handshake token, tracks channels per user,
runs one gated event stream per subscription, and force-closes every channel
of a user whose session was revoked.

A channel moves through ``CONNECTING -> AUTHENTICATED -> CLOSED``; while
authenticated it holds any number of subscriptions. Each channel owns its
request context and its streams; nothing is shared between channels.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from fastapi import WebSocket
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from api import metrics
from api.schemas import WSError, WSNext
from core.audit_logger import audit_logger, AuditEventType
from core.config import settings
from core.exceptions import ChatError, InternalError, InvalidToken, Unauthorized
from db.repository import Repository
from services.context import RequestContext
from services.subscriptions import GatedStream, SubscriptionGate, SubscriptionKind

logger = logging.getLogger(__name__)

# Close codes
CLOSE_AUTH_FAILED = 4001
CLOSE_LIMIT_REACHED = 4002
CLOSE_SESSION_REVOKED = 4003
CLOSE_TIMEOUT = 1001


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Channel:
    """
    One live connection and the subscriptions opened on it.

    Attributes:
        websocket: Underlying socket
        context: Principal context from the handshake token
        user_id: Principal the channel was authenticated as
        streams: Open streams keyed by client operation id
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.state = ChannelState.CONNECTING
        self.context: Optional[RequestContext] = None
        self.user_id: Optional[int] = None
        self.streams: Dict[str, GatedStream] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self.last_heartbeat = datetime.utcnow()
        self.loop = asyncio.get_running_loop()
        self._send_lock = asyncio.Lock()

    @property
    def subscription_count(self) -> int:
        return len(self.streams)

    async def send(self, frame: Dict[str, Any]) -> bool:
        """Send a JSON frame unless the channel is already closed."""
        if self.state is ChannelState.CLOSED:
            return False
        async with self._send_lock:
            await self.websocket.send_json(frame)
        return True

    async def send_error(self, error: ChatError, op_id: Optional[str] = None) -> None:
        frame = WSError(id=op_id, error={"type": error.error_type, "message": error.message})
        await self.send(frame.model_dump(mode="json"))

    def stop_stream(self, op_id: str) -> bool:
        stream = self.streams.pop(op_id, None)
        task = self.tasks.pop(op_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if stream is not None:
            stream.close()
            return True
        return False

    def stop_all_streams(self) -> None:
        for op_id in list(self.streams):
            self.stop_stream(op_id)

    async def close(self, code: int, reason: str) -> None:
        """Stop every stream and close the socket."""
        if self.state is ChannelState.CLOSED:
            return
        self.stop_all_streams()
        self.state = ChannelState.CLOSED
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError:
            # Socket already torn down by the peer
            logger.debug(f"Channel for user {self.user_id} was already closed")


class ConnectionManager:
    """
    Manages authenticated live channels.

    Features:
    - Authenticates channels from the handshake token (signature + token version)
    - Tracks channels per user (multiple devices/tabs supported)
    - Enforces a per-user channel limit
    - Re-validates the principal before each subscribe operation
    - Revokes every channel of a user on password change or logout
    """

    def __init__(self):
        # {user_id: List[Channel]} - tracks all channels per user
        self.active_connections: Dict[int, List[Channel]] = defaultdict(list)

        logger.info("ConnectionManager initialized")

    def authenticate(self, channel: Channel, token: Optional[str], session_factory: Callable[[], Session]) -> None:
        """
        Validate the handshake token and attach a context to the channel.

        Runs the database check synchronously; call through a threadpool.

        Raises:
            Unauthorized: No token in the handshake payload
            InvalidToken: Bad signature, unknown user, or stale token version
        """
        context = RequestContext.from_token(token, transport="ws")
        try:
            with session_factory() as db:
                user = context.resolve(Repository(db))
        except ChatError:
            metrics.auth_token_validations_total.labels(status="rejected").inc()
            raise
        metrics.auth_token_validations_total.labels(status="accepted").inc()
        channel.context = context
        channel.user_id = user.id

    def connect(self, channel: Channel) -> bool:
        """
        Register an authenticated channel.

        Returns:
            True if registered, False if the user's channel limit is reached
        """
        user_id = channel.user_id
        current = len(self.active_connections[user_id])
        if current >= settings.max_channels_per_user:
            logger.warning(
                f"Channel limit reached for user {user_id}: "
                f"{current}/{settings.max_channels_per_user}"
            )
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]
            return False

        channel.state = ChannelState.AUTHENTICATED
        self.active_connections[user_id].append(channel)
        metrics.websocket_connections_total.inc()
        metrics.update_websocket_metrics(self)
        audit_logger.log_channel(AuditEventType.CHANNEL_OPENED, user_id)
        logger.info(
            f"User {user_id} opened a live channel "
            f"(total channels: {len(self.active_connections[user_id])})"
        )
        return True

    def disconnect(self, channel: Channel, reason: str = "normal") -> None:
        """
        Remove a channel and stop its streams.

        Args:
            channel: Channel to remove
            reason: Label for the disconnection metric
        """
        channel.stop_all_streams()
        channel.state = ChannelState.CLOSED

        user_id = channel.user_id
        channels = self.active_connections.get(user_id)
        if channels is None or channel not in channels:
            return
        channels.remove(channel)
        if not channels:
            del self.active_connections[user_id]

        metrics.websocket_disconnections_total.labels(reason=reason).inc()
        metrics.update_websocket_metrics(self)
        logger.info(
            f"User {user_id} closed a live channel "
            f"(remaining channels: {len(self.active_connections.get(user_id, []))})"
        )

    async def subscribe(
        self,
        channel: Channel,
        gate: SubscriptionGate,
        op_id: str,
        kind: SubscriptionKind,
        args: Dict[str, Any]
    ) -> None:
        """
        Authorize and start one subscription on a channel.

        The principal and the client's arguments are re-validated against the
        database; the stream is registered with the bus before this returns.

        Raises:
            ChatError: Authorization or argument failure (channel stays open
                unless the session itself is invalid)
        """
        subscription = await run_in_threadpool(gate.authorize, kind, args, channel.context)
        stream = gate.open(subscription, channel.context)
        channel.streams[op_id] = stream
        channel.tasks[op_id] = asyncio.create_task(self._pump(channel, op_id, stream))
        metrics.update_websocket_metrics(self)
        logger.info(f"User {channel.user_id} subscribed to {kind.value} as operation {op_id}")

    def complete(self, channel: Channel, op_id: str) -> bool:
        stopped = channel.stop_stream(op_id)
        metrics.update_websocket_metrics(self)
        return stopped

    async def _pump(self, channel: Channel, op_id: str, stream: GatedStream) -> None:
        """Forward gated events of one subscription to the client."""
        kind = stream.subscription.kind.value
        try:
            async for event in stream:
                frame = WSNext(id=op_id, payload=event.payload)
                if not await channel.send(frame.model_dump(mode="json")):
                    break
                metrics.events_delivered_total.labels(kind=kind).inc()
        except (InvalidToken, Unauthorized) as e:
            logger.info(f"Session of user {channel.user_id} no longer valid: {e.message}")
            await channel.send_error(e, op_id)
            await self._revoke_channel(channel, "Session revoked")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error delivering {kind} to user {channel.user_id}: {e}")
            await channel.send_error(InternalError(), op_id)
        finally:
            stream.close()
            # The operation id may already belong to a newer subscription
            if channel.streams.get(op_id) is stream:
                channel.stop_stream(op_id)
                metrics.update_websocket_metrics(self)

    async def _revoke_channel(self, channel: Channel, reason: str) -> None:
        await channel.close(code=CLOSE_SESSION_REVOKED, reason=reason)
        self.disconnect(channel, reason="revoked")
        audit_logger.log_channel(AuditEventType.CHANNEL_REVOKED, channel.user_id, reason)

    def revoke_user_channels(self, user_id: int, reason: str = "Session revoked") -> int:
        """
        Force-close every channel authenticated as a user.

        Safe to call from any thread: each close is scheduled on the loop
        that owns the channel.

        Returns:
            Number of channels scheduled for closing
        """
        channels = list(self.active_connections.get(user_id, []))
        for channel in channels:
            asyncio.run_coroutine_threadsafe(self._revoke_channel(channel, reason), channel.loop)
        if channels:
            logger.info(f"Revoking {len(channels)} live channels of user {user_id}: {reason}")
        return len(channels)

    def update_heartbeat(self, channel: Channel) -> None:
        channel.last_heartbeat = datetime.utcnow()
        logger.debug(f"Heartbeat updated for user {channel.user_id}")

    def get_stale_connections(self, timeout_seconds: int) -> List[Channel]:
        """
        Find channels that haven't answered a ping recently.

        Args:
            timeout_seconds: Seconds since last heartbeat to consider stale

        Returns:
            List of stale channels
        """
        cutoff = datetime.utcnow() - timedelta(seconds=timeout_seconds)
        return [channel for channel in self.all_channels() if channel.last_heartbeat < cutoff]

    def all_channels(self) -> List[Channel]:
        return [channel for channels in self.active_connections.values() for channel in channels]

    def get_connection_count(self) -> int:
        return sum(len(channels) for channels in self.active_connections.values())

    def get_user_count(self) -> int:
        return len(self.active_connections)

    def get_subscription_count(self) -> int:
        return sum(channel.subscription_count for channel in self.all_channels())


# Global connection manager instance
connection_manager = ConnectionManager()


async def heartbeat_monitor(interval_seconds: Optional[int] = None, timeout_seconds: Optional[int] = None):
    """
    Background task to send heartbeat pings and close stale channels.

    Args:
        interval_seconds: Seconds between ping frames
        timeout_seconds: Seconds without a pong before a channel is closed
    """
    interval_seconds = interval_seconds or settings.heartbeat_interval_seconds
    timeout_seconds = timeout_seconds or settings.heartbeat_timeout_seconds
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            ping_frame = {"type": "ping", "timestamp": datetime.utcnow().isoformat()}
            for channel in connection_manager.all_channels():
                try:
                    await channel.send(ping_frame)
                except Exception as e:
                    logger.error(f"Error sending ping to user {channel.user_id}: {e}")

            for channel in connection_manager.get_stale_connections(timeout_seconds):
                logger.warning(f"Closing stale channel for user {channel.user_id}")
                await channel.close(code=CLOSE_TIMEOUT, reason="Connection timeout")
                connection_manager.disconnect(channel, reason="timeout")

            logger.info(
                f"Heartbeat complete: {connection_manager.get_connection_count()} channels, "
                f"{connection_manager.get_user_count()} users"
            )
        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}")
