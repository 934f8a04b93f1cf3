"""Inbound WebSocket event payloads.

Clients send ``{"type": <event>, ...payload}``. Each event type has a
model here; a payload that fails validation is dropped by the router.

A ``conversationKey`` field may be present on some payloads for
compatibility. It is ignored: keys are always derived on the server.
"""
from typing import Annotated, Dict, Optional, Type

from pydantic import BaseModel, Field

Identity = Annotated[str, Field(min_length=1, max_length=64)]


class LoginEvent(BaseModel):
    identity: Identity


class LogoutEvent(BaseModel):
    identity: Identity


class JoinRoomEvent(BaseModel):
    """Join the conversation with ``peer``; the key is derived server-side."""
    peer: Identity


class SendMessageEvent(BaseModel):
    sender: Identity
    receiver: Identity
    body: str = Field(..., min_length=1)
    tag: Optional[str] = None


class AddReactionEvent(BaseModel):
    messageId: str = Field(..., min_length=1)
    identity: Identity
    emoji: str = Field(..., min_length=1, max_length=32)


class MarkReadEvent(BaseModel):
    """``identityA`` has read everything ``identityB`` sent them."""
    identityA: Identity
    identityB: Identity


class TypingEvent(BaseModel):
    sender: Identity
    receiver: Identity
    isTyping: bool = True


class ClearChatEvent(BaseModel):
    identityA: Identity
    identityB: Identity


class DeleteMessageEvent(BaseModel):
    messageId: str = Field(..., min_length=1)
    identity: Identity


class EditMessageEvent(BaseModel):
    messageId: str = Field(..., min_length=1)
    identity: Identity
    newBody: str = Field(..., min_length=1)


EVENT_MODELS: Dict[str, Type[BaseModel]] = {
    "login": LoginEvent,
    "logout": LogoutEvent,
    "joinRoom": JoinRoomEvent,
    "sendMessage": SendMessageEvent,
    "addReaction": AddReactionEvent,
    "markRead": MarkReadEvent,
    "typing": TypingEvent,
    "clearChat": ClearChatEvent,
    "deleteMessage": DeleteMessageEvent,
    "editMessage": EditMessageEvent,
}
