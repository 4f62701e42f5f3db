"""
API endpoint implementations.
Defines the REST endpoints for users, groups and messages, plus the WebSocket
endpoint for live subscriptions. Every handler goes through the mediator;
authorization never happens here.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Callable, Optional
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from api import metrics
from api.dependencies import get_mediator, get_request_context, get_session_factory, get_event_bus
from api.schemas import (
    UserResponse, UserUpdate,
    GroupCreate, GroupUpdate, GroupResponse, GroupRemoved,
    MessageCreate, MessageResponse, MessageListResponse,
    MessageConnectionResponse, MessageEdge, PageInfo,
    serialize_group, serialize_message, serialize_user
)
from api.websocket_manager import (
    Channel, ChannelState, connection_manager,
    CLOSE_AUTH_FAILED, CLOSE_LIMIT_REACHED, CLOSE_SESSION_REVOKED
)
from core.audit_logger import audit_logger, AuditEventType
from core.exceptions import BadRequest, ChatError, InvalidToken
from services.context import RequestContext
from services.event_bus import EventBus
from services.mediator import Mediator
from services.subscriptions import SubscriptionGate, parse_kind

logger = logging.getLogger(__name__)

CONNECTION_INIT_TIMEOUT_SECONDS = 10

# Create routers
users_router = APIRouter()
groups_router = APIRouter()
websocket_router = APIRouter()


# User Endpoints
@users_router.get("/me", response_model=UserResponse, status_code=status.HTTP_200_OK)
def get_me(
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """Return the caller with their groups and friends."""
    user = mediator.get_user(context)
    return serialize_user(user, mediator.list_user_groups(context, user.id))


@users_router.patch("/me", response_model=UserResponse, status_code=status.HTTP_200_OK)
def update_me(
    request: UserUpdate,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    principal = mediator.get_user(context)
    user = mediator.update_user(context, principal.id, request.username)
    logger.info(f"User {user.id} renamed to {user.username}")
    return serialize_user(user, mediator.list_user_groups(context, user.id))


@users_router.get("/{user_id}", response_model=UserResponse, status_code=status.HTTP_200_OK)
def get_user(
    user_id: int,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Fetch a user by id.

    Only the caller's own record is readable; other existing ids answer
    401 ``unauthorized`` and unknown ids 404 ``not_found``.
    """
    user = mediator.get_user(context, user_id=user_id)
    return serialize_user(user, mediator.list_user_groups(context, user.id))


@users_router.get("/{user_id}/messages", response_model=MessageListResponse, status_code=status.HTTP_200_OK)
def list_user_messages(
    user_id: int,
    limit: Optional[int] = Query(None, ge=1, description="Maximum messages returned"),
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    messages = mediator.list_user_messages(context, user_id, limit)
    return MessageListResponse(
        messages=[serialize_message(message) for message in messages],
        limit=len(messages)
    )


# Group Endpoints
@groups_router.post("", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
def create_group(
    request: GroupCreate,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Create a group.

    The caller always joins; ``user_ids`` that are not the caller's friends
    are skipped. Members other than the caller receive a ``group_added``
    event on their live channels.

    Example Request:
        ```json
        POST /v1/groups
        Authorization: Bearer <token>
        {"name": "Project Team", "user_ids": [2, 3]}
        ```
    """
    group = mediator.create_group(context, request.name, request.user_ids, request.icon)
    metrics.groups_created_total.inc()
    return serialize_group(group, viewer_id=context.user_id)


@groups_router.get("/{group_id}", response_model=GroupResponse, status_code=status.HTTP_200_OK)
def get_group(
    group_id: int,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    group = mediator.get_group(context, group_id)
    return serialize_group(group, viewer_id=context.user_id)


@groups_router.patch("/{group_id}", response_model=GroupResponse, status_code=status.HTTP_200_OK)
def update_group(
    group_id: int,
    request: GroupUpdate,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Rename a group, change its icon, or move the caller's read marker.

    ``last_read_id`` must name a message of this group.
    """
    group = mediator.update_group(
        context,
        group_id,
        name=request.name,
        icon=request.icon,
        last_read_id=request.last_read_id
    )
    return serialize_group(group, viewer_id=context.user_id)


@groups_router.delete("/{group_id}", response_model=GroupRemoved, status_code=status.HTTP_200_OK)
def delete_group(
    group_id: int,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    return GroupRemoved(id=mediator.delete_group(context, group_id))


@groups_router.post("/{group_id}/leave", response_model=GroupRemoved, status_code=status.HTTP_200_OK)
def leave_group(
    group_id: int,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """Leave a group; the group is deleted once nobody is left."""
    return GroupRemoved(id=mediator.leave_group(context, group_id))


# Message Endpoints
@groups_router.get("/{group_id}/messages", response_model=MessageConnectionResponse, response_model_exclude_none=True)
def list_group_messages(
    group_id: int,
    first: Optional[int] = Query(None, description="Forward window size"),
    after: Optional[str] = Query(None, description="Cursor; return messages older than it"),
    last: Optional[int] = Query(None, description="Backward window size"),
    before: Optional[str] = Query(None, description="Cursor; return messages newer than it"),
    page_info: bool = Query(True, description="Include has_next_page/has_previous_page"),
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Page through a group's messages, newest first.

    Use ``first``/``after`` to walk toward older messages and
    ``last``/``before`` to walk back toward newer ones. The two pairs cannot
    be combined. The existence checks behind ``page_info`` only run when it
    is requested.

    Example:
        ```
        GET /v1/groups/1/messages?first=2&after=MTAz
        ```
    """
    connection = mediator.list_messages(context, group_id, first=first, after=after, last=last, before=before)

    info = None
    if page_info:
        info = PageInfo(
            has_next_page=connection.has_next_page(),
            has_previous_page=connection.has_previous_page()
        )
    return MessageConnectionResponse(
        edges=[MessageEdge(cursor=edge.cursor, node=serialize_message(edge.node)) for edge in connection.edges],
        page_info=info
    )


@groups_router.post("/{group_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def create_message(
    group_id: int,
    request: MessageCreate,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Post a message to a group.

    Every other member subscribed to the group through ``message_added``
    receives it; the author's own channels do not.
    """
    message = mediator.create_message(context, group_id, request.text)
    metrics.messages_created_total.inc()
    logger.info(f"Message {message.id} created in group {group_id} by user {message.user_id}")
    return serialize_message(message)


# WebSocket Endpoint
async def _handshake(websocket: WebSocket, channel: Channel, session_factory: Callable[[], Session]) -> bool:
    """Wait for ``connection_init`` and authenticate the channel from its token."""
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=CONNECTION_INIT_TIMEOUT_SECONDS)
        frame = json.loads(raw)
    except WebSocketDisconnect:
        return False
    except asyncio.TimeoutError:
        await websocket.close(code=CLOSE_AUTH_FAILED, reason="Handshake timeout")
        return False
    except json.JSONDecodeError:
        await websocket.close(code=CLOSE_AUTH_FAILED, reason="Invalid handshake")
        return False

    if not isinstance(frame, dict) or frame.get("type") != "connection_init":
        await websocket.close(code=CLOSE_AUTH_FAILED, reason="Expected connection_init")
        return False

    payload = frame.get("payload") or {}
    token = payload.get("token") if isinstance(payload, dict) else None
    try:
        await run_in_threadpool(connection_manager.authenticate, channel, token, session_factory)
    except ChatError as e:
        logger.warning(f"WebSocket authentication failed: {e.message}")
        audit_logger.log_channel(AuditEventType.CHANNEL_REFUSED, None, e.message)
        await websocket.close(code=CLOSE_AUTH_FAILED, reason="Authentication failed")
        return False

    if not connection_manager.connect(channel):
        audit_logger.log_channel(AuditEventType.CHANNEL_REFUSED, channel.user_id, "channel limit reached")
        await websocket.close(code=CLOSE_LIMIT_REACHED, reason="Connection limit reached")
        return False
    return True


async def _handle_subscribe(channel: Channel, gate: SubscriptionGate, frame: dict) -> None:
    op_id = frame.get("id")
    if not isinstance(op_id, str) or not op_id:
        await channel.send_error(BadRequest("Missing operation id"))
        return
    if op_id in channel.streams:
        await channel.send_error(BadRequest(f"Operation {op_id} already active"), op_id)
        return

    try:
        kind = parse_kind(frame.get("kind"))
        args = frame.get("args") or {}
        if not isinstance(args, dict):
            raise BadRequest("Subscription args must be an object")
        await connection_manager.subscribe(channel, gate, op_id, kind, args)
    except InvalidToken as e:
        # Session revoked between the handshake and this operation
        await channel.send_error(e, op_id)
        await channel.close(code=CLOSE_SESSION_REVOKED, reason="Session revoked")
        return
    except ChatError as e:
        await channel.send_error(e, op_id)
        return

    await channel.send({"type": "subscribed", "id": op_id, "timestamp": datetime.utcnow().isoformat()})


@websocket_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    bus: EventBus = Depends(get_event_bus)
):
    """
    WebSocket endpoint for live subscriptions.

    Connection Flow:
        1. Client connects and sends ``{"type": "connection_init", "payload": {"token": "<jwt>"}}``
        2. Server validates the token (signature and current token version)
           and answers ``connection_ack``, or closes with 4001
        3. Client opens subscriptions, each with its own operation id:
           ``{"type": "subscribe", "id": "1", "kind": "message_added", "args": {"group_ids": [1]}}``
           ``{"type": "subscribe", "id": "2", "kind": "group_added", "args": {"user_id": 7}}``
        4. Server answers ``subscribed`` or an ``error`` frame, then pushes
           ``{"type": "next", "id": "1", "payload": {...}}`` per delivered event
        5. ``{"type": "complete", "id": "1"}`` stops one subscription
        6. Server sends periodic pings; clients answer ``{"type": "pong"}``

    Error Codes:
        - 4001: Authentication failed
        - 4002: Connection limit reached
        - 4003: Session revoked (password change or logout)
        - 1001: Connection timeout (no heartbeat)
    """
    await websocket.accept()
    channel = Channel(websocket)

    if not await _handshake(websocket, channel, session_factory):
        return

    gate = SubscriptionGate(bus, session_factory)
    logger.info(f"Live channel established for user {channel.user_id}")

    try:
        await channel.send({"type": "connection_ack", "timestamp": datetime.utcnow().isoformat()})

        while channel.state is ChannelState.AUTHENTICATED:
            data = await websocket.receive_text()

            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                await channel.send_error(BadRequest("Invalid JSON format"))
                continue
            if not isinstance(frame, dict):
                await channel.send_error(BadRequest("Frames must be JSON objects"))
                continue

            frame_type = frame.get("type")
            if frame_type == "subscribe":
                await _handle_subscribe(channel, gate, frame)

            elif frame_type == "complete":
                op_id = frame.get("id")
                if connection_manager.complete(channel, op_id):
                    await channel.send({"type": "complete", "id": op_id})

            elif frame_type == "pong":
                connection_manager.update_heartbeat(channel)

            elif frame_type == "ping":
                connection_manager.update_heartbeat(channel)
                await channel.send({"type": "pong"})

            else:
                await channel.send_error(BadRequest(f"Unknown frame type: {frame_type}"))

    except WebSocketDisconnect:
        logger.info(f"User {channel.user_id} disconnected from live channel")
    except Exception as e:
        logger.error(f"WebSocket error for user {channel.user_id}: {e}")
    finally:
        connection_manager.disconnect(channel)
