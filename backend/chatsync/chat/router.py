"""Chat router providing the real-time WebSocket endpoint.

This module provides:
    - WebSocket /ws: presence, conversation and message events

Protocol:
    Every frame is a JSON object ``{"type": <event>, ...payload}``.

    On connect the server sends:
        {type: "connected", connectionId}
        {type: "onlineUsers", users: [...]}

    Client events:
        - login {identity}
        - logout {identity}
        - joinRoom {peer}
        - sendMessage {sender, receiver, body, tag?}
        - addReaction {messageId, identity, emoji}
        - markRead {identityA, identityB}
        - typing {sender, receiver, isTyping}
        - clearChat {identityA, identityB}
        - deleteMessage {messageId, identity}
        - editMessage {messageId, identity, newBody}

    Server events:
        - onlineUsers {users}          to every connection
        - joined {conversationKey}     to the joining connection
        - newMessage {message}         to the conversation group
        - messageUpdated {message}     to the conversation group
        - refresh {}                   to the reader's counterpart only
        - typing {sender, isTyping}    to the group, minus the typist
        - cleared {conversationKey}    to the conversation group
        - rejected {operation, reason} to the caller only

Error handling:
    - binary frames, malformed frames and payloads are logged and dropped
    - unauthorized actions get a ``rejected`` reply and change nothing
    - store failures are reported to the failure channel, nothing is broadcast
    - no failure closes the connection
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .errors import MutationRejected, PersistenceError, failures
from .manager import manager
from .rooms import conversation_key
from .schemas import EVENT_MODELS
from .session import Session

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint handling one client connection.

    Events from one connection are processed strictly in order; each one
    runs to completion before the next frame is read.
    """
    session = await manager.connect(websocket)
    try:
        await websocket.send_json({"type": "connected", "connectionId": session.connection_id})
        await websocket.send_json(manager.presence.snapshot())

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                logger.warning("[WS] Dropping binary frame from %s", session.connection_id)
                continue
            try:
                await handle_event(session, websocket, raw)
            except MutationRejected as rejected:
                logger.warning(
                    "[WS] %s rejected for %s: %s",
                    rejected.operation, session.connection_id, rejected.reason,
                )
                await websocket.send_json(rejected.to_event())
            except PersistenceError as exc:
                failures.report(exc.operation, exc)
            except WebSocketDisconnect:
                raise
            except Exception as exc:
                logger.exception("[WS] Unexpected error on %s", session.connection_id)
                failures.report("ws.handler", exc)

    except WebSocketDisconnect:
        logger.info("[WS] %s disconnected", session.connection_id)
    finally:
        await manager.disconnect(session)


async def handle_event(session: Session, websocket: WebSocket, raw: str) -> None:
    """Validate one client frame and apply it."""
    if session.is_closed:
        return

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("[WS] Dropping non-JSON frame from %s", session.connection_id)
        return
    if not isinstance(data, dict):
        logger.warning("[WS] Dropping non-object frame from %s", session.connection_id)
        return

    event_type = data.get("type")
    model = EVENT_MODELS.get(event_type)
    if model is None:
        logger.warning("[WS] Dropping unknown event type %r from %s", event_type, session.connection_id)
        return

    try:
        event = model.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "[WS] Dropping invalid %s from %s: %d error(s)",
            event_type, session.connection_id, exc.error_count(),
        )
        return

    logger.debug("[WS] %s received: type=%s", session.connection_id, event_type)
    engine = manager.engine

    # --- Session events ---
    if event_type == "login":
        await session.login(event.identity)
        return

    if event_type == "logout":
        await manager.logout(session, event.identity)
        return

    # --- Conversation membership ---
    if event_type == "joinRoom":
        if not session.is_authenticated:
            raise MutationRejected("joinRoom", "unauthenticated")
        key = conversation_key(session.identity, event.peer)
        await manager.rooms.join(session.connection_id, key)
        await websocket.send_json({"type": "joined", "conversationKey": key})
        return

    # --- Typing indicator (not persisted, sender's own connection excluded) ---
    if event_type == "typing":
        session.require_identity("typing", event.sender)
        await manager.rooms.broadcast(
            conversation_key(event.sender, event.receiver),
            {"type": "typing", "sender": event.sender, "isTyping": event.isTyping},
            exclude=session.connection_id,
        )
        return

    # --- Message mutations ---
    if event_type == "sendMessage":
        session.require_identity("sendMessage", event.sender)
        await engine.create(event.sender, event.receiver, event.body, event.tag)
        return

    if event_type == "addReaction":
        session.require_identity("addReaction", event.identity)
        await engine.react(event.messageId, event.identity, event.emoji)
        return

    if event_type == "markRead":
        session.require_identity("markRead", event.identityA)
        await engine.mark_read(event.identityA, event.identityB)
        return

    if event_type == "editMessage":
        session.require_identity("editMessage", event.identity)
        await engine.edit(event.messageId, event.identity, event.newBody)
        return

    if event_type == "deleteMessage":
        session.require_identity("deleteMessage", event.identity)
        await engine.delete(event.messageId, event.identity)
        return

    if event_type == "clearChat":
        if not session.is_authenticated:
            raise MutationRejected("clearChat", "unauthenticated")
        if session.identity not in (event.identityA, event.identityB):
            raise MutationRejected("clearChat", "not_participant")
        await engine.clear_conversation(event.identityA, event.identityB)
        return
