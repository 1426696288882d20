"""Core synchronization components.

This module exports the main synchronization classes:
- ConfigResolver: Memoized resolution of provider connection parameters
- ChatListSynchronizer: Loads and enriches the chat overview list
- MessageHistoryFetcher: Walks a chat's paginated message history
- SessionPoller: Polls the provider session status on an interval
- SyncStore: Owns the synchronized state and coordinates the above
"""

from crm_chat_sync.core.chat_list import ChatListSynchronizer
from crm_chat_sync.core.config_resolver import ConfigResolver, build_connection_config
from crm_chat_sync.core.message_history import MessageHistoryFetcher, merge_messages
from crm_chat_sync.core.session_poller import SessionPoller
from crm_chat_sync.core.store import SynchronizationState, SyncStore

__all__ = [
    "ChatListSynchronizer",
    "ConfigResolver",
    "MessageHistoryFetcher",
    "SessionPoller",
    "SyncStore",
    "SynchronizationState",
    "build_connection_config",
    "merge_messages",
]
