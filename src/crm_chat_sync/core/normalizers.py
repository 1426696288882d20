"""Normalization of raw provider payloads into domain models.

The provider's field names, nesting and value types vary across versions
and message kinds. Every function here accepts arbitrary decoded JSON,
never raises, and degrades malformed input to ``None`` or defaults.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from ..models.chat import (
    BROADCAST_STATUS_ID,
    CONTACT_SUFFIX,
    GROUP_SUFFIX,
    ChatOverview,
    LastMessagePreview,
    PresenceUpdate,
)
from ..models.message import Acknowledgement, Message, MessageType
from ..models.session import SessionStatus

RawRecord = Mapping[str, Any]

# Numeric timestamps at or below this are seconds, above it milliseconds
MILLISECONDS_THRESHOLD = 1e12

AUDIO_TYPES = frozenset({"audio", "ptt", "voice"})
AUDIO_EXTENSIONS = (".ogg", ".mp3", ".m4a", ".wav", ".aac")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".heic")

MEDIA_URL_KEYS = ("mediaUrl", "url", "mediaURL", "fileUrl", "directPath", "filePath", "path")

IMAGE_PLACEHOLDER = "Imagem"
AUDIO_PLACEHOLDER = "Mensagem de áudio"
EMPTY_CHAT_PLACEHOLDER = "Nova conversa"

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n"})

_ACK_CODES = {
    0: Acknowledgement.PENDING,
    1: Acknowledgement.SENT,
    2: Acknowledgement.DELIVERED,
    3: Acknowledgement.READ,
}


# =============================================================================
# Primitive readers
# =============================================================================


def as_record(value: Any) -> RawRecord | None:
    """Return the value if it is a JSON object, else None."""
    return value if isinstance(value, Mapping) else None


def read_string(record: RawRecord | None, key: str) -> str | None:
    if record is None:
        return None
    value = record.get(key)
    return value if isinstance(value, str) else None


def to_number(value: Any) -> float | None:
    """Coerce a JSON number or numeric string to a finite float."""
    # bool is an int subclass but never a provider number
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def read_number(record: RawRecord | None, key: str) -> float | None:
    return to_number(record.get(key)) if record is not None else None


def to_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    return None


def read_boolean(record: RawRecord | None, key: str) -> bool | None:
    return to_boolean(record.get(key)) if record is not None else None


def first_string(record: RawRecord | None, *keys: str) -> str | None:
    """Return the first key holding a string (possibly empty)."""
    for key in keys:
        value = read_string(record, key)
        if value is not None:
            return value
    return None


def pick_first_non_empty(*values: Any) -> str | None:
    """Return the first non-blank string, stripped."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_timestamp(value: Any) -> int | None:
    """Convert a seconds or milliseconds timestamp to epoch milliseconds."""
    numeric = to_number(value)
    if numeric is None:
        return None
    if numeric > MILLISECONDS_THRESHOLD:
        return int(numeric)
    return int(round(numeric * 1000))


# =============================================================================
# Message kind and acknowledgement
# =============================================================================


def detect_message_type(raw: RawRecord | None) -> MessageType:
    """Classify a message as text, image or audio.

    Checked in order: explicit type, MIME prefix, filename extension, then
    a media flag without a MIME type (treated as an image).
    """
    if raw is None:
        return MessageType.TEXT

    type_value = (read_string(raw, "type") or "").lower()
    mime = (first_string(raw, "mimetype", "mimeType") or "").lower()
    filename = (first_string(raw, "filename", "fileName") or "").lower()

    if type_value in AUDIO_TYPES:
        return MessageType.AUDIO
    if type_value == "image":
        return MessageType.IMAGE
    if mime.startswith("audio/"):
        return MessageType.AUDIO
    if mime.startswith("image/"):
        return MessageType.IMAGE
    if filename.endswith(AUDIO_EXTENSIONS):
        return MessageType.AUDIO
    if filename.endswith(IMAGE_EXTENSIONS):
        return MessageType.IMAGE
    if to_boolean(raw.get("hasMedia")) is True and not mime:
        return MessageType.IMAGE
    return MessageType.TEXT


def ack_from_name(value: Any) -> Acknowledgement | None:
    """Translate a named acknowledgement (case-insensitive)."""
    if not isinstance(value, str):
        return None
    try:
        return Acknowledgement[value.strip().upper()]
    except KeyError:
        return None


def ack_from_code(value: Any) -> Acknowledgement | None:
    """Translate a numeric acknowledgement code (0-3)."""
    code = to_number(value)
    if code is None or not code.is_integer():
        return None
    return _ACK_CODES.get(int(code))


def resolve_ack(raw: RawRecord | None) -> Acknowledgement | None:
    """Resolve acknowledgement from ``ackName``, falling back to ``ack``.

    ``ack`` itself may carry either a code or a name. Unrecognized values
    yield None rather than a guess.
    """
    if raw is None:
        return None
    for candidate in (
        ack_from_name(raw.get("ackName")),
        ack_from_name(raw.get("ack")),
        ack_from_code(raw.get("ack")),
    ):
        if candidate is not None:
            return candidate
    return None


def pick_media_url(raw: RawRecord | None) -> str | None:
    if raw is None:
        return None
    for key in MEDIA_URL_KEYS:
        candidate = read_string(raw, key)
        if candidate and candidate.strip():
            return candidate
    body = read_string(raw, "body")
    if body and body.startswith("data:"):
        return body
    return None


# =============================================================================
# Chat identifiers
# =============================================================================


def is_group_chat_id(chat_id: str) -> bool:
    return GROUP_SUFFIX in chat_id


def extract_phone_from_chat_id(chat_id: str) -> str:
    """Strip the messaging suffix from a chat id, leaving the phone number."""
    return chat_id.replace(CONTACT_SUFFIX, "").replace(GROUP_SUFFIX, "")


def format_phone_to_chat_id(phone: str) -> str:
    """Build an individual chat id from a phone number in any format."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"{digits}{CONTACT_SUFFIX}"


# =============================================================================
# Entity normalizers
# =============================================================================


def normalize_last_message(raw: Any) -> LastMessagePreview | None:
    """Build a chat-list preview; previews without a timestamp are dropped."""
    record = as_record(raw)
    if record is None:
        return None

    timestamp = normalize_timestamp(record.get("timestamp"))
    if timestamp is None:
        return None

    message_type = detect_message_type(record)
    body = read_string(record, "body")
    if body and body.strip():
        preview = body
    elif message_type is MessageType.IMAGE:
        preview = IMAGE_PLACEHOLDER
    elif message_type is MessageType.AUDIO:
        preview = AUDIO_PLACEHOLDER
    else:
        preview = EMPTY_CHAT_PLACEHOLDER

    return LastMessagePreview(
        id=read_string(record, "id"),
        body=preview,
        timestamp=timestamp,
        from_me=read_boolean(record, "fromMe") or False,
        type=message_type,
        ack=resolve_ack(record),
    )


def normalize_chat(raw: Any) -> ChatOverview | None:
    """Convert a raw chat overview record into a ChatOverview.

    Returns None for records without an id, for the broadcast-status
    pseudo-chat, and for records whose name is explicitly null.
    """
    record = as_record(raw)
    if record is None:
        return None

    chat_id = read_string(record, "id")
    if not chat_id or chat_id == BROADCAST_STATUS_ID:
        return None

    if "name" in record and record["name"] is None:
        return None

    name = read_string(record, "name")
    avatar = read_string(record, "avatar")
    picture = read_string(record, "picture")
    unread = read_number(record, "unreadCount")

    return ChatOverview(
        id=chat_id,
        name=name.strip() if name and name.strip() else None,
        is_group=is_group_chat_id(chat_id),
        unread_count=max(0, int(unread)) if unread is not None else 0,
        avatar=avatar or picture or None,
        picture=picture or avatar or None,
        last_message=normalize_last_message(record.get("lastMessage")),
        archived=read_boolean(record, "archived"),
        pinned=read_boolean(record, "pinned"),
    )


def normalize_message(chat_id: str, raw: Any) -> Message | None:
    """Convert a raw message record into a Message.

    Requires an ``id`` and a parseable ``timestamp``; anything else is
    optional and falls back through the known alternative field names.
    """
    record = as_record(raw)
    if record is None:
        return None

    message_id = read_string(record, "id")
    timestamp = normalize_timestamp(record.get("timestamp"))
    if not message_id or timestamp is None:
        return None

    media_url = pick_media_url(record)
    has_media = read_boolean(record, "hasMedia")

    return Message(
        id=message_id,
        chat_id=chat_id,
        body=read_string(record, "body"),
        timestamp=timestamp,
        from_me=read_boolean(record, "fromMe") or False,
        type=detect_message_type(record),
        ack=resolve_ack(record),
        author=first_string(record, "author", "participant", "from"),
        quoted_msg_id=first_string(record, "quotedMsgId", "quotedMsg", "quotedMessageId"),
        has_media=has_media if has_media is not None else media_url is not None,
        media_url=media_url,
        filename=first_string(record, "filename", "fileName"),
        caption=read_string(record, "caption"),
        mime_type=first_string(record, "mimetype", "mimeType"),
    )


def normalize_webhook_message(raw: Any) -> Message | None:
    """Normalize a provider-pushed message whose chat id is embedded in it.

    The chat id comes from ``chatId``; otherwise from ``to`` for
    self-authored messages and ``from`` for inbound ones.
    """
    record = as_record(raw)
    if record is None:
        return None

    payload = as_record(record.get("payload")) or record
    from_me = read_boolean(payload, "fromMe") or False
    chat_id = pick_first_non_empty(
        read_string(payload, "chatId"),
        read_string(payload, "to") if from_me else read_string(payload, "from"),
    )
    if chat_id is None or chat_id == BROADCAST_STATUS_ID:
        return None
    return normalize_message(chat_id, payload)


def normalize_session_status(raw: Any, fallback_name: str | None = None) -> SessionStatus | None:
    """Convert a session status payload; None when no status is present."""
    record = as_record(raw)
    if record is None:
        return None

    status = pick_first_non_empty(read_string(record, "status"))
    name = pick_first_non_empty(read_string(record, "name"), fallback_name)
    if status is None or name is None:
        return None

    me = as_record(record.get("me"))
    return SessionStatus(
        name=name,
        status=status.upper(),
        me_id=pick_first_non_empty(read_string(me, "id")),
        me_name=pick_first_non_empty(read_string(me, "pushName"), read_string(me, "name")),
    )


PRESENCE_CHAT_ID_KEYS = (
    "chatId",
    "chat_id",
    "chatID",
    "id",
    "jid",
    "remoteJid",
    "remote",
    "user",
    "userId",
    "participant",
)
PRESENCE_STATUS_KEYS = ("presence", "presenceStatus", "status", "state")
ONLINE_KEYS = ("isOnline", "online", "is_online")
LAST_SEEN_KEYS = ("lastSeen", "last_seen", "lastSeenAt", "lastSeenTs", "timestamp", "lastOnline")


def _first_boolean(record: RawRecord | None, keys: tuple[str, ...]) -> bool | None:
    for key in keys:
        value = read_boolean(record, key)
        if value is not None:
            return value
    return None


def _first_timestamp(record: RawRecord | None, keys: tuple[str, ...]) -> int | None:
    if record is None:
        return None
    for key in keys:
        timestamp = normalize_timestamp(record.get(key))
        if timestamp is not None:
            return timestamp
    return None


def normalize_presence_update(raw: Any) -> PresenceUpdate | None:
    """Convert a presence event into a PresenceUpdate.

    The event may be wrapped in ``payload`` or ``data``. The chat id can
    also come from a nested ``chat`` or ``contact`` object, and presence
    fields from a nested ``presence`` object. Returns None without a chat id.
    """
    record = as_record(raw)
    if record is None:
        return None
    source = as_record(record.get("payload")) or as_record(record.get("data")) or record

    chat = as_record(source.get("chat"))
    contact = as_record(source.get("contact"))
    nested = as_record(source.get("presence"))

    chat_id = pick_first_non_empty(
        *(read_string(source, key) for key in PRESENCE_CHAT_ID_KEYS),
        read_string(chat, "id"),
        read_string(chat, "_serialized"),
        read_string(contact, "id"),
        read_string(contact, "_serialized"),
    )
    if chat_id is None:
        return None

    presence = pick_first_non_empty(
        *(read_string(source, key) for key in PRESENCE_STATUS_KEYS),
        *(read_string(nested, key) for key in ("presence", "status", "state")),
    )
    is_online = _first_boolean(source, ONLINE_KEYS)
    if is_online is None:
        is_online = _first_boolean(nested, ("isOnline", "online"))
    last_seen = _first_timestamp(source, LAST_SEEN_KEYS)
    if last_seen is None:
        last_seen = _first_timestamp(nested, ("lastSeen", "last_seen", "lastSeenAt", "timestamp"))

    return PresenceUpdate(
        chat_id=chat_id,
        is_online=is_online,
        last_seen=last_seen,
        presence=presence,
    )
