"""Pydantic schemas for stored chat records.

These are the records owned by the Record Store and broadcast to clients:

    - User: a registered username and its lastSeen marker
    - Message: one message between two identities, with its reactions and
      edit/delete overlays
"""
import time
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

# Body shown in place of a soft-deleted message
DELETED_NOTICE = "This message was deleted"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(BaseModel):
    """A chat participant.

    Attributes:
        username: Unique identity of the participant.
        createdAt: When the user record was first written (UTC).
        lastSeen: When the user last went offline; None while online or never seen.
    """
    username: str = Field(..., min_length=1, description="Unique username")
    createdAt: datetime = Field(default_factory=utcnow)
    lastSeen: Optional[datetime] = Field(default=None, description="None while online")


class Reaction(BaseModel):
    """A single emoji reaction. At most one per identity on a message."""
    identity: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1)


class Message(BaseModel):
    """A message exchanged between two identities.

    The sender/receiver pair never changes after creation. Edit, delete,
    react and mark-read mutate the record in place; delete is a soft
    overlay that swaps the body for DELETED_NOTICE.

    Attributes:
        id: Store-assigned unique id (empty until inserted).
        sender: Identity that wrote the message.
        receiver: Identity the message is addressed to.
        body: Message text.
        timestamp: Creation time in seconds since epoch.
        read: Whether the receiver has read the message.
        tag: Optional client-supplied label.
        reactions: Reactions in the order they were added.
        edited: Whether the sender changed the body.
        editedAt: Time of the last edit (seconds since epoch).
        deleted: Whether the message was soft-deleted.
        deletedBy: Identity that deleted the message.
        version: Incremented by the store on every save.
    """
    id: str = Field(default="", description="Store-assigned message ID")
    sender: str = Field(..., min_length=1)
    receiver: str = Field(..., min_length=1)
    body: str = Field(...)
    timestamp: float = Field(default_factory=time.time)
    read: bool = False
    tag: Optional[str] = None
    reactions: List[Reaction] = Field(default_factory=list)
    edited: bool = False
    editedAt: Optional[float] = None
    deleted: bool = False
    deletedBy: Optional[str] = None
    version: int = 0

    def is_participant(self, identity: str) -> bool:
        return identity in (self.sender, self.receiver)
