"""Data models for chat overviews."""

from dataclasses import dataclass

from .message import Acknowledgement, Message, MessageType

GROUP_SUFFIX = "@g.us"
CONTACT_SUFFIX = "@c.us"
BROADCAST_STATUS_ID = "status@broadcast"


@dataclass(frozen=True)
class LastMessagePreview:
    """Summary of the most recent message shown in the chat list."""

    body: str
    timestamp: int
    from_me: bool
    type: MessageType
    id: str | None = None
    ack: Acknowledgement | None = None

    @classmethod
    def from_message(cls, message: Message) -> "LastMessagePreview":
        """Build a preview from a full message."""
        return cls(
            id=message.id,
            body=message.preview_text,
            timestamp=message.timestamp,
            from_me=message.from_me,
            type=message.type,
            ack=message.ack,
        )


@dataclass(frozen=True)
class ChatOverview:
    """A conversation as listed in the chat sidebar."""

    id: str
    name: str | None
    is_group: bool
    unread_count: int = 0
    avatar: str | None = None
    picture: str | None = None
    last_message: LastMessagePreview | None = None
    archived: bool | None = None
    pinned: bool | None = None
    is_online: bool | None = None
    last_seen: int | None = None
    presence: str | None = None

    @property
    def last_activity(self) -> int:
        """Timestamp of the last message, 0 when there is none."""
        return self.last_message.timestamp if self.last_message else 0

    @property
    def has_name(self) -> bool:
        return bool(self.name and self.name.strip())

    @property
    def has_avatar(self) -> bool:
        return bool(self.avatar and self.avatar.strip())


@dataclass(frozen=True)
class PresenceUpdate:
    """Online state reported for a chat; None fields carry no information."""

    chat_id: str
    is_online: bool | None = None
    last_seen: int | None = None
    presence: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.is_online is None and self.last_seen is None and self.presence is None
