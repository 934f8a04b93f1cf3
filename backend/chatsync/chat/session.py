"""Session Lifecycle: per-connection login state machine.

    UNAUTHENTICATED --login--> AUTHENTICATED --logout--> UNAUTHENTICATED
            \\                        |
             `------- close ---------+----> CLOSED (terminal)

A session is driven by one WebSocket handler, which processes events one
at a time, so the session itself needs no locking. The Presence Registry
it calls into is shared and does its own serialization.
"""
import logging
from enum import Enum
from typing import Optional, Set

from .errors import MutationRejected
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Session:
    """Login state of a single connection."""

    def __init__(self, connection_id: str, presence: PresenceRegistry) -> None:
        self.connection_id = connection_id
        self.state = SessionState.UNAUTHENTICATED
        self.identity: Optional[str] = None
        self._presence = presence

    @property
    def is_authenticated(self) -> bool:
        # a logout on another connection releases this identity before demote() runs
        return (
            self.state == SessionState.AUTHENTICATED
            and self._presence.identity_of(self.connection_id) == self.identity
        )

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    async def login(self, identity: str) -> bool:
        """Bind this connection to ``identity``.

        Returns:
            False if the session was already authenticated or closed.
        """
        if self.state == SessionState.AUTHENTICATED and not self.is_authenticated:
            self.demote()
        if self.state != SessionState.UNAUTHENTICATED:
            logger.info(
                "[Session] login(%s) ignored on %s in state %s",
                identity, self.connection_id, self.state.value,
            )
            return False
        self.identity = identity
        self.state = SessionState.AUTHENTICATED
        await self._presence.associate(identity, self.connection_id)
        return True

    async def logout(self, identity: str) -> Set[str]:
        """Log ``identity`` out everywhere; this connection stays open.

        Returns:
            Connection ids that were logged out.

        Raises:
            MutationRejected: Not logged in, or logged in as someone else.
        """
        self.require_identity("logout", identity)
        removed = await self._presence.explicit_logout(identity)
        self.demote()
        return removed

    async def close(self) -> Optional[str]:
        """Transport closed: release presence and become terminal."""
        if self.is_closed:
            return None
        self.state = SessionState.CLOSED
        self.identity = None
        return await self._presence.disassociate(self.connection_id)

    def demote(self) -> None:
        """Drop back to UNAUTHENTICATED after this identity was logged out."""
        if self.is_closed:
            return
        self.identity = None
        self.state = SessionState.UNAUTHENTICATED

    def require_identity(self, operation: str, claimed: str) -> None:
        """Check that the acting identity in a payload is this session's identity."""
        if not self.is_authenticated:
            raise MutationRejected(operation, "unauthenticated")
        if claimed != self.identity:
            raise MutationRejected(operation, "identity_mismatch")
