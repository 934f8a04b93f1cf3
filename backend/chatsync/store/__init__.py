"""Record Store module: durable User and Message records."""

from .schemas import DELETED_NOTICE, Message, Reaction, User
from .service import CallAbandoned, CallTicket, RecordStore, StaleRecordError, StoreError

__all__ = [
    "DELETED_NOTICE",
    "Message",
    "Reaction",
    "User",
    "CallAbandoned",
    "CallTicket",
    "RecordStore",
    "StaleRecordError",
    "StoreError",
]
