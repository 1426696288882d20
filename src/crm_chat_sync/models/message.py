"""Data models for chat messages."""

from dataclasses import dataclass
from enum import Enum, IntEnum


class MessageType(Enum):
    """Kind of content carried by a message."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class Acknowledgement(IntEnum):
    """Delivery state of an outbound message, ordered by progress."""

    PENDING = 0
    SENT = 1
    DELIVERED = 2
    READ = 3


@dataclass(frozen=True)
class Message:
    """A single message inside a chat.

    Timestamps are epoch milliseconds. Instances are never mutated; an
    acknowledgement change produces a replacement entry.
    """

    id: str
    chat_id: str
    timestamp: int
    from_me: bool
    type: MessageType
    has_media: bool = False
    body: str | None = None
    ack: Acknowledgement | None = None
    author: str | None = None
    quoted_msg_id: str | None = None
    media_url: str | None = None
    filename: str | None = None
    caption: str | None = None
    mime_type: str | None = None

    @property
    def preview_text(self) -> str:
        """Text shown as the chat's last-message preview."""
        for candidate in (self.body, self.caption, self.filename):
            if candidate:
                return candidate
        if self.media_url and self.type is not MessageType.TEXT:
            return self.media_url
        return ""
