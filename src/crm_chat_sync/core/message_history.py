"""Paginated message history loading."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from ..models.message import Message
from ..utils.logging import LogEventNames
from .normalizers import normalize_message

if TYPE_CHECKING:
    from ..interfaces.provider import ChatProvider

log = structlog.get_logger()

DEFAULT_MESSAGE_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 10


@dataclass(frozen=True)
class HistoryPage:
    """Messages from one history walk and where the next walk starts."""

    messages: list[Message]
    next_offset: int
    has_more: bool


def merge_messages(*batches: Iterable[Message]) -> list[Message]:
    """Deduplicate by id (last write wins) and sort by timestamp ascending.

    The sort is stable, so messages sharing a timestamp keep arrival order.
    """
    by_id: dict[str, Message] = {}
    for batch in batches:
        for message in batch:
            by_id[message.id] = message
    return sorted(by_id.values(), key=lambda message: message.timestamp)


class MessageHistoryFetcher:
    """Walks a chat's history page by page up to a bounded page count.

    Example:
        fetcher = MessageHistoryFetcher(client, page_size=100, max_pages=10)
        messages = await fetcher.load_messages("5511999999999@c.us")
    """

    def __init__(
        self,
        provider: ChatProvider,
        page_size: int = DEFAULT_MESSAGE_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        download_media: bool = False,
    ) -> None:
        """Initialize the fetcher.

        Args:
            provider: Chat provider to fetch from.
            page_size: Messages requested per page.
            max_pages: Hard stop on pages fetched per call.
            download_media: Ask the provider to resolve media URLs.
        """
        if page_size < 1 or max_pages < 1:
            raise ValueError("page_size and max_pages must be positive")
        self._provider = provider
        self._page_size = page_size
        self._max_pages = max_pages
        self._download_media = download_media

    async def load_messages(self, chat_id: str) -> list[Message]:
        """Fetch the chat's history, deduplicated and ordered by timestamp.

        Pages are fetched sequentially from offset 0 until a short page or
        the page limit. An error on any page aborts the whole call and
        nothing fetched so far is returned.

        Raises:
            ProviderRequestError: If any page fails.
        """
        return (await self.load_history(chat_id)).messages

    async def load_history(
        self,
        chat_id: str,
        offset: int = 0,
        max_pages: int | None = None,
    ) -> HistoryPage:
        """Walk the history from ``offset`` and report where the walk stopped.

        Args:
            chat_id: Chat whose history is fetched.
            offset: Provider offset of the first page.
            max_pages: Page limit for this call. Defaults to the fetcher's.

        Raises:
            ProviderRequestError: If any page fails.
        """
        page_limit = max_pages or self._max_pages
        messages: dict[str, Message] = {}
        has_more = True

        for page in range(page_limit):
            raw_page = await self._provider.get_chat_messages(
                chat_id,
                limit=self._page_size,
                offset=offset,
                download_media=self._download_media,
            )

            for raw in raw_page:
                message = normalize_message(chat_id, raw)
                if message is None:
                    continue
                if message.id in messages:
                    log.debug(
                        LogEventNames.DUPLICATE_MESSAGE_ID,
                        chat_id=chat_id,
                        message_id=message.id,
                    )
                messages[message.id] = message

            log.debug(
                LogEventNames.MESSAGES_PAGE_FETCHED,
                chat_id=chat_id,
                page=page,
                offset=offset,
                received=len(raw_page),
            )

            offset += len(raw_page)
            if len(raw_page) < self._page_size:
                has_more = False
                break
        else:
            if max_pages is None:
                log.warning(
                    LogEventNames.MESSAGE_PAGE_LIMIT_REACHED,
                    chat_id=chat_id,
                    max_pages=page_limit,
                )

        result = merge_messages(messages.values())
        log.info(LogEventNames.MESSAGES_LOADED, chat_id=chat_id, count=len(result), offset=offset)
        return HistoryPage(messages=result, next_offset=offset, has_more=has_more)
