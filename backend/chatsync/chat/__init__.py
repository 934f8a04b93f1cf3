"""Real-time chat core: presence, conversation routing and message mutations."""

from .errors import FailureReporter, MutationRejected, PersistenceError, failures
from .manager import ChatManager, manager
from .rooms import conversation_key

__all__ = [
    "ChatManager",
    "FailureReporter",
    "MutationRejected",
    "PersistenceError",
    "conversation_key",
    "failures",
    "manager",
]
