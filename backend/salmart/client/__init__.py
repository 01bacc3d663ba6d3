"""Chat client and local conversation cache."""

from .cache import CacheEntry, ConversationCache, SyncState, conversation_key
from .chat_client import ChatClient

__all__ = [
    "CacheEntry",
    "ConversationCache",
    "SyncState",
    "conversation_key",
    "ChatClient",
]
