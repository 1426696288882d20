"""Data models and transfer objects."""

from .chat import (
    BROADCAST_STATUS_ID,
    CONTACT_SUFFIX,
    GROUP_SUFFIX,
    ChatOverview,
    LastMessagePreview,
    PresenceUpdate,
)
from .connection import ConnectionConfig
from .message import Acknowledgement, Message, MessageType
from .session import FAILED_STATUS, WORKING_STATUS, SessionStatus

__all__ = [
    # Chat models
    "BROADCAST_STATUS_ID",
    "CONTACT_SUFFIX",
    "GROUP_SUFFIX",
    "ChatOverview",
    "LastMessagePreview",
    "PresenceUpdate",
    # Connection models
    "ConnectionConfig",
    # Message models
    "Acknowledgement",
    "Message",
    "MessageType",
    # Session models
    "FAILED_STATUS",
    "WORKING_STATUS",
    "SessionStatus",
]
