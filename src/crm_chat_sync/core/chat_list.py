"""Chat list loading with contact enrichment.

The overview endpoint often lacks names and pictures. Chats missing both
are enriched from the chat-info endpoint in parallel; a failed enrichment
keeps the chat with its baseline data. Any chat still without a name is
named after the phone number in its id.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from ..models.chat import ChatOverview
from ..utils.async_helpers import ChatNotFoundError
from ..utils.logging import LogEventNames
from .normalizers import as_record, extract_phone_from_chat_id, normalize_chat, read_string

if TYPE_CHECKING:
    from ..interfaces.provider import ChatProvider

log = structlog.get_logger()

DEFAULT_CHAT_PAGE_SIZE = 50

# Candidate sources in priority order; first non-empty value wins
NAME_SOURCES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("contact", ("name", "pushname", "formattedName", "shortName")),
    ("chat", ("name",)),
    ("root", ("name", "contactName", "formattedName", "pushName")),
)

AVATAR_SOURCES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("contact", ("avatar", "img", "picture", "profilePicUrl")),
    ("profile_thumb", ("eurl", "img")),
    ("chat", ("avatar", "picture")),
    ("root", ("avatar", "picture", "profilePicUrl", "profilePicture")),
)


@dataclasses.dataclass(frozen=True)
class ChatPage:
    """One page of enriched chats and the offset of the next page."""

    chats: list[ChatOverview]
    next_offset: int
    has_more: bool


def sort_chats_by_recency(chats: Iterable[ChatOverview]) -> list[ChatOverview]:
    """Most recent activity first, then case-insensitive name."""
    return sorted(chats, key=lambda chat: (-chat.last_activity, (chat.name or "").lower()))


def with_fallback_name(chat: ChatOverview) -> ChatOverview:
    """Name a chat after its phone number when it has no usable name."""
    if chat.has_name:
        return chat
    return dataclasses.replace(chat, name=extract_phone_from_chat_id(chat.id))


def needs_enrichment(chat: ChatOverview) -> bool:
    return not chat.has_name and not chat.has_avatar


def _info_sources(info: Mapping[str, Any]) -> dict[str, Mapping[str, Any] | None]:
    contact = as_record(info.get("contact"))
    profile_thumb = as_record(info.get("profilePicThumbObj"))
    if profile_thumb is None and contact is not None:
        profile_thumb = as_record(contact.get("profilePicThumbObj"))
    return {
        "contact": contact,
        "profile_thumb": profile_thumb,
        "chat": as_record(info.get("chat")),
        "root": info,
    }


def _pick(
    sources: Mapping[str, Mapping[str, Any] | None],
    candidates: Sequence[tuple[str, tuple[str, ...]]],
) -> str | None:
    for source_name, keys in candidates:
        record = sources.get(source_name)
        for key in keys:
            value = read_string(record, key)
            if value and value.strip():
                return value.strip()
    return None


def merge_chat_info(chat: ChatOverview, info: Any) -> ChatOverview:
    """Fill a chat's missing name and avatar from a chat-info record.

    Values already present on the chat are kept.
    """
    record = as_record(info)
    if record is None:
        return chat

    sources = _info_sources(record)
    name = chat.name if chat.has_name else _pick(sources, NAME_SOURCES)
    avatar = chat.avatar if chat.has_avatar else _pick(sources, AVATAR_SOURCES)

    return dataclasses.replace(
        chat,
        name=name,
        avatar=avatar,
        picture=chat.picture or avatar,
    )


class ChatListSynchronizer:
    """Loads the chat overview list and enriches it.

    Example:
        synchronizer = ChatListSynchronizer(client)
        chats = await synchronizer.load_chats()
    """

    def __init__(self, provider: ChatProvider, page_size: int = DEFAULT_CHAT_PAGE_SIZE) -> None:
        """Initialize the synchronizer.

        Args:
            provider: Chat provider to fetch from.
            page_size: Number of chats requested from the overview endpoint.
        """
        self._provider = provider
        self._page_size = page_size

    async def load_chats(self, offset: int = 0) -> list[ChatOverview]:
        """Fetch, normalize and enrich one page of the chat overview list.

        Returns:
            Chats sorted by recency.

        Raises:
            ProviderRequestError: If the overview fetch itself fails.
        """
        return (await self.load_page(offset)).chats

    async def load_page(self, offset: int = 0) -> ChatPage:
        """Like ``load_chats``, also reporting where the next page starts."""
        log.debug(LogEventNames.CHATS_LOADING, offset=offset, limit=self._page_size)
        raw_chats = await self._provider.get_chats_overview(self._page_size, offset)

        chats: list[ChatOverview] = []
        for raw in raw_chats:
            chat = normalize_chat(raw)
            if chat is None:
                raw_record = as_record(raw)
                log.debug(
                    LogEventNames.CHAT_FILTERED,
                    chat_id=read_string(raw_record, "id"),
                )
                continue
            chats.append(chat)

        enriched = await asyncio.gather(*(self.enrich(chat) for chat in chats))

        result = sort_chats_by_recency(with_fallback_name(chat) for chat in enriched)
        log.info(
            LogEventNames.CHATS_LOADED,
            received=len(raw_chats),
            kept=len(result),
        )
        return ChatPage(
            chats=result,
            next_offset=offset + len(raw_chats),
            has_more=len(raw_chats) >= self._page_size,
        )

    async def enrich(self, chat: ChatOverview) -> ChatOverview:
        """Enrich a chat that has neither a name nor an avatar.

        Never raises: failures are logged and the chat is returned unchanged.
        """
        if not needs_enrichment(chat):
            return chat

        try:
            info = await self._provider.get_chat_info(chat.id)
        except ChatNotFoundError:
            log.debug("chat_info_not_found", chat_id=chat.id)
            return chat
        except Exception as e:
            log.warning(LogEventNames.CHAT_ENRICHMENT_FAILED, chat_id=chat.id, error=str(e))
            return chat

        return merge_chat_info(chat, info)
