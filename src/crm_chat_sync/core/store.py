"""Synchronization state store.

The store owns the client-side view of the provider: chats, per-chat message
lists, the active chat and the session status. It coordinates the chat list
synchronizer, the message history fetcher and the session poller, and is the
only place that mutates that view.

Every mutation replaces the frozen ``SynchronizationState`` in a single
assignment, so readers never observe a half-updated list. Every asynchronous
completion checks the store's cancellation token before committing; results
that arrive after ``stop()`` are discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from ..config.schema import PollingConfig, ProviderConfig
from ..interfaces.notifier import NotificationLevel
from ..models.chat import ChatOverview, LastMessagePreview, PresenceUpdate
from ..models.message import Acknowledgement, Message, MessageType
from ..models.session import FAILED_STATUS, SessionStatus
from ..utils.async_helpers import CancellationToken, SessionUnavailableError, SyncError
from ..utils.logging import LogEventNames
from .chat_list import (
    ChatListSynchronizer,
    ChatPage,
    sort_chats_by_recency,
    with_fallback_name,
)
from .config_resolver import DEFAULT_SESSION_NAME
from .message_history import MessageHistoryFetcher, merge_messages
from .normalizers import (
    as_record,
    extract_phone_from_chat_id,
    is_group_chat_id,
    normalize_message,
    normalize_presence_update,
    normalize_webhook_message,
)
from .session_poller import SessionPoller

if TYPE_CHECKING:
    from ..interfaces.notifier import Notifier
    from ..interfaces.provider import ChatProvider

log = structlog.get_logger()

PENDING_ID_PREFIX = "pending-"

CHATS_LOAD_FAILED_TITLE = "Erro ao carregar conversas"
MESSAGES_LOAD_FAILED_TITLE = "Erro ao carregar mensagens"
SEND_FAILED_TITLE = "Erro ao enviar mensagem"
SESSION_STATUS_FAILED_TITLE = "Erro ao verificar a sessão"
MESSAGE_SENT_TITLE = "Mensagem enviada"
GENERIC_FAILURE_DESCRIPTION = "Ocorreu um erro inesperado. Tente novamente."


@dataclass(frozen=True)
class SynchronizationState:
    """Immutable snapshot of the synchronized view."""

    chats: Mapping[str, ChatOverview] = field(default_factory=dict)
    messages_by_chat: Mapping[str, tuple[Message, ...]] = field(default_factory=dict)
    active_chat_id: str | None = None
    session_status: SessionStatus | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _placeholder_chat(chat_id: str, unread_count: int = 0) -> ChatOverview:
    return ChatOverview(
        id=chat_id,
        name=extract_phone_from_chat_id(chat_id),
        is_group=is_group_chat_id(chat_id),
        unread_count=unread_count,
    )


def _shows_message(chat: ChatOverview, message_id: str) -> bool:
    return chat.last_message is not None and chat.last_message.id == message_id


def _replace_message(
    messages: Iterable[Message],
    message_id: str,
    replacement: Message,
) -> list[Message]:
    kept = [message for message in messages if message.id != message_id]
    return merge_messages(kept, [replacement])


def _reconcile_history(
    fetched: list[Message],
    current: Iterable[Message],
    arrivals: set[str],
) -> list[Message]:
    """Combine a fetched history with what changed locally while it loaded.

    Messages added during the load and pending sends survive the commit.
    A fetched message keeps a newer acknowledgement seen locally.
    """
    local = {message.id: message for message in current}
    refreshed = []
    for message in fetched:
        seen = local.get(message.id)
        seen_ack = seen.ack if seen is not None else None
        if seen_ack is not None and (message.ack is None or seen_ack > message.ack):
            message = dataclasses.replace(message, ack=seen_ack)
        refreshed.append(message)

    fetched_ids = {message.id for message in fetched}
    kept = [
        message
        for message in local.values()
        if message.id not in fetched_ids
        and (message.id in arrivals or message.id.startswith(PENDING_ID_PREFIX))
    ]
    return merge_messages(refreshed, kept)


class SyncStore:
    """Client-side synchronization state and the operations that change it.

    Example:
        store = SyncStore(client, notifier, config.provider, config.polling)
        async with store:
            await store.select_chat("5511999999999@c.us")
            await store.send_message("5511999999999@c.us", "Olá")
    """

    def __init__(
        self,
        provider: ChatProvider,
        notifier: Notifier | None = None,
        provider_config: ProviderConfig | None = None,
        polling_config: PollingConfig | None = None,
        session_name: str | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            provider: Chat provider adapter.
            notifier: Sink for user-facing notifications. Optional.
            provider_config: Paging and send settings. Defaults apply if None.
            polling_config: Session poller settings. Defaults apply if None.
            session_name: Session name used when a status payload has none.
        """
        provider_config = provider_config or ProviderConfig()
        polling_config = polling_config or PollingConfig()

        self._provider = provider
        self._notifier = notifier
        self._session_name = session_name
        self._mark_read_hint = provider_config.mark_read_hint
        self._link_preview = provider_config.link_preview

        self._chat_list = ChatListSynchronizer(provider, provider_config.chat_page_size)
        self._history = MessageHistoryFetcher(
            provider,
            page_size=provider_config.message_page_size,
            max_pages=provider_config.max_message_pages,
            download_media=provider_config.download_media,
        )
        self._poller = SessionPoller(
            provider,
            on_status=self.apply_session_status,
            interval=polling_config.session_interval,
            timeout=polling_config.poll_timeout,
            session_name=session_name,
        )

        self._refresh_interval = polling_config.chats_refresh_interval
        self._refresh_task: asyncio.Task[None] | None = None

        self._state = SynchronizationState()
        self._token = CancellationToken()
        self._running = False

        # Chat list paging; a reset load bumps the generation
        self._chats_generation = 0
        self._chat_fetches = 0
        self._chat_offset = 0
        self._has_more_chats = False

        # Chats whose history has been loaded and their next page offsets
        self._loaded_chats: set[str] = set()
        self._history_offsets: dict[str, int] = {}
        self._history_has_more: dict[str, bool] = {}
        # One set of arrived message ids per history load in flight
        self._arrival_logs: dict[str, list[set[str]]] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> SyncStore:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SynchronizationState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def chats(self) -> list[ChatOverview]:
        """Chats ordered by recency."""
        return sort_chats_by_recency(self._state.chats.values())

    @property
    def active_chat_id(self) -> str | None:
        return self._state.active_chat_id

    @property
    def active_chat(self) -> ChatOverview | None:
        chat_id = self._state.active_chat_id
        if chat_id is None:
            return None
        return self._state.chats.get(chat_id)

    @property
    def active_chat_messages(self) -> list[Message]:
        chat_id = self._state.active_chat_id
        if chat_id is None:
            return []
        return self.messages_for(chat_id)

    @property
    def session_status(self) -> SessionStatus | None:
        return self._state.session_status

    @property
    def session_name(self) -> str | None:
        return self._session_name

    @property
    def has_more_chats(self) -> bool:
        return self._has_more_chats

    def has_older_messages(self, chat_id: str) -> bool:
        return self._history_has_more.get(chat_id, False)

    def get_chat(self, chat_id: str) -> ChatOverview | None:
        return self._state.chats.get(chat_id)

    def messages_for(self, chat_id: str) -> list[Message]:
        return list(self._state.messages_by_chat.get(chat_id, ()))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Arm a fresh liveness token, start polling and load the chat list.

        A failed initial chat load is reported through the notifier and
        does not stop the poller. The chat list is then refreshed every
        ``chats_refresh_interval`` seconds unless that is 0.
        """
        if self._running:
            log.warning("sync_already_running")
            return

        self._token = CancellationToken()
        self._running = True
        log.info(LogEventNames.SYNC_STARTED, session=self._session_name)

        self._poller.start()
        with contextlib.suppress(SyncError):
            await self.load_chats()
        if self._refresh_interval > 0 and not self._token.is_cancelled:
            self._refresh_task = asyncio.create_task(
                self._refresh_chats_periodically(self._token),
                name="chat_list_refresh",
            )

    async def stop(self) -> None:
        """Stop polling and discard any result that completes afterwards."""
        if not self._running:
            log.warning("sync_not_running")
            return

        self._token.cancel()
        await self._poller.stop()

        refresh, self._refresh_task = self._refresh_task, None
        pending = list(self._background_tasks)
        if refresh is not None:
            pending.append(refresh)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background_tasks.clear()

        self._running = False
        log.info(LogEventNames.SYNC_STOPPED, chats=len(self._state.chats))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_chats(self) -> list[ChatOverview]:
        """Load the first chat page and replace the stored chats with it.

        When loads overlap, only the one started last commits.

        Raises:
            SyncError: If the overview fetch fails. Stored chats are kept.
        """
        return await self._reload_chats(notify=True)

    async def load_more_chats(self) -> list[ChatOverview]:
        """Fetch the next chat page and merge it into the stored chats.

        Nothing is fetched after the last page or while another chat fetch
        is in flight. A page whose fetch is overtaken by a reload is dropped.

        Returns:
            The chats of the merged page.

        Raises:
            SyncError: If the page fetch fails. Stored chats are kept.
        """
        if not self._has_more_chats or self._chat_fetches:
            return []

        token = self._token
        generation = self._chats_generation
        offset = self._chat_offset
        page = await self._fetch_chat_page(token, offset, notify=True)
        if generation != self._chats_generation:
            log.debug(LogEventNames.STALE_RESULT_DISCARDED, operation="load_more_chats")
            return []

        chats = {**self._state.chats, **{chat.id: chat for chat in page.chats}}
        if not self._commit(token, "load_more_chats", chats=chats):
            return []
        self._chat_offset = page.next_offset
        self._has_more_chats = page.has_more
        log.info(
            LogEventNames.CHATS_PAGE_LOADED,
            offset=offset,
            count=len(page.chats),
            has_more=page.has_more,
        )
        return page.chats

    async def refresh_chats(self) -> None:
        """Reload the chat list without notifying.

        Skipped while another chat fetch is in flight. Failures are logged.
        """
        if self._chat_fetches:
            log.debug("chats_refresh_skipped")
            return
        try:
            await self._reload_chats(notify=False)
        except Exception as e:
            log.warning(LogEventNames.CHATS_REFRESH_FAILED, error=str(e))

    async def load_messages(self, chat_id: str) -> list[Message]:
        """Load a chat's full history and replace its stored message list.

        Messages added or sent while the history loads are kept.

        Raises:
            SyncError: If any page fails. The stored list is kept.
        """
        token = self._token
        arrivals = self._track_arrivals(chat_id)
        try:
            page = await self._history.load_history(chat_id)
        except Exception as e:
            log.error(LogEventNames.MESSAGES_LOAD_FAILED, chat_id=chat_id, error=str(e))
            self._report_failure(token, MESSAGES_LOAD_FAILED_TITLE, e)
            raise
        finally:
            self._untrack_arrivals(chat_id, arrivals)

        current = self._state.messages_by_chat.get(chat_id, ())
        messages = _reconcile_history(page.messages, current, arrivals)
        committed = self._commit(
            token,
            "load_messages",
            messages_by_chat={**self._state.messages_by_chat, chat_id: tuple(messages)},
        )
        if committed:
            self._loaded_chats.add(chat_id)
            self._history_offsets[chat_id] = page.next_offset
            self._history_has_more[chat_id] = page.has_more
        return page.messages

    async def load_older_messages(self, chat_id: str) -> list[Message]:
        """Fetch one more page of history behind what is stored for a chat.

        A chat without loaded history gets a full load instead. Only
        messages that are not stored yet are inserted.

        Returns:
            The inserted messages, oldest first. Empty when the history is
            exhausted or a load for the chat is in flight.

        Raises:
            SyncError: If the page fetch fails. The stored list is kept.
        """
        if self._is_loading(chat_id):
            return []
        if chat_id not in self._loaded_chats:
            return await self.load_messages(chat_id)
        if not self._history_has_more.get(chat_id, False):
            return []

        token = self._token
        offset = self._history_offsets.get(chat_id, 0)
        arrivals = self._track_arrivals(chat_id)
        try:
            page = await self._history.load_history(chat_id, offset=offset, max_pages=1)
        except Exception as e:
            log.error(
                LogEventNames.MESSAGES_LOAD_FAILED,
                chat_id=chat_id,
                offset=offset,
                error=str(e),
            )
            self._report_failure(token, MESSAGES_LOAD_FAILED_TITLE, e)
            raise
        finally:
            self._untrack_arrivals(chat_id, arrivals)

        current = self._state.messages_by_chat.get(chat_id, ())
        known = {message.id for message in current}
        inserted = [message for message in page.messages if message.id not in known]
        committed = self._commit(
            token,
            "load_older_messages",
            messages_by_chat={
                **self._state.messages_by_chat,
                chat_id: tuple(merge_messages(current, inserted)),
            },
        )
        if not committed:
            return []

        self._history_offsets[chat_id] = page.next_offset
        self._history_has_more[chat_id] = page.has_more
        log.info(
            LogEventNames.OLDER_MESSAGES_LOADED,
            chat_id=chat_id,
            offset=offset,
            inserted=len(inserted),
            has_more=page.has_more,
        )
        return inserted

    async def select_chat(self, chat_id: str) -> None:
        """Make a chat active, loading its history on first selection.

        An unknown chat is inserted as a placeholder named after its phone
        number. After loading, the chat is marked as read.
        """
        state = self._state
        chats = state.chats
        if chat_id not in chats:
            chats = {**chats, chat_id: _placeholder_chat(chat_id)}
        self._state = dataclasses.replace(state, chats=chats, active_chat_id=chat_id)

        if chat_id not in self._loaded_chats and not self._is_loading(chat_id):
            await self.load_messages(chat_id)

        await self.mark_as_read(chat_id)

    # ------------------------------------------------------------------
    # Sending and receiving
    # ------------------------------------------------------------------

    async def send_message(self, chat_id: str, text: str) -> Message | None:
        """Send a text message with an optimistic local entry.

        A pending message is shown immediately and replaced by the
        provider's record on success. On failure the pending message and
        the previous last-message preview are restored.

        Returns:
            The confirmed message, or None when the text is blank.

        Raises:
            SyncError: If the provider rejects the send.
        """
        text = text.strip()
        if not text:
            return None

        token = self._token
        pending = Message(
            id=f"{PENDING_ID_PREFIX}{uuid.uuid4().hex}",
            chat_id=chat_id,
            timestamp=_now_ms(),
            from_me=True,
            type=MessageType.TEXT,
            body=text,
            ack=Acknowledgement.PENDING,
        )
        previous_chat = self._state.chats.get(chat_id)
        self._apply_outgoing(pending)

        log.info(LogEventNames.MESSAGE_SENDING, chat_id=chat_id, message_id=pending.id)
        try:
            raw = await self._provider.send_text(chat_id, text, link_preview=self._link_preview)
        except Exception as e:
            log.error(LogEventNames.MESSAGE_SEND_FAILED, chat_id=chat_id, error=str(e))
            self._rollback_send(token, pending, previous_chat)
            self._report_failure(token, SEND_FAILED_TITLE, e)
            raise

        confirmed = self._confirmed_message(pending, raw)
        if not self._token_alive(token, "send_message"):
            return confirmed

        state = self._state
        messages = _replace_message(
            state.messages_by_chat.get(chat_id, ()),
            pending.id,
            confirmed,
        )
        chats = dict(state.chats)
        chat = chats.get(chat_id)
        if chat is not None and (chat.last_message is None or _shows_message(chat, pending.id)):
            chats[chat_id] = dataclasses.replace(
                chat,
                last_message=LastMessagePreview.from_message(confirmed),
            )
        self._state = dataclasses.replace(
            state,
            chats=chats,
            messages_by_chat={**state.messages_by_chat, chat_id: tuple(messages)},
        )
        self._record_arrival(chat_id, confirmed.id)

        log.info(LogEventNames.MESSAGE_SENT, chat_id=chat_id, message_id=confirmed.id)
        self._notify(MESSAGE_SENT_TITLE, text, NotificationLevel.INFO)
        return confirmed

    def add_message(self, message: Message) -> bool:
        """Add a provider-pushed message to its chat.

        Duplicate ids are ignored. The chat's preview is updated and its
        unread count incremented unless the message is self-authored. A
        message for an unknown chat creates a provisional chat that is
        enriched in the background.

        Returns:
            True if the message was added.
        """
        if not self._token_alive(self._token, "add_message"):
            return False

        state = self._state
        chat_id = message.chat_id
        existing = state.messages_by_chat.get(chat_id, ())
        if any(item.id == message.id for item in existing):
            log.debug(LogEventNames.DUPLICATE_MESSAGE_ID, chat_id=chat_id, message_id=message.id)
            return False

        increment = 0 if message.from_me else 1
        preview = LastMessagePreview.from_message(message)
        chat = state.chats.get(chat_id)
        provisional = chat is None
        if chat is None:
            chat = ChatOverview(
                id=chat_id,
                name=None,
                is_group=is_group_chat_id(chat_id),
                unread_count=increment,
                last_message=preview,
            )
        else:
            chat = dataclasses.replace(
                chat,
                unread_count=chat.unread_count + increment,
                last_message=(
                    preview if message.timestamp >= chat.last_activity else chat.last_message
                ),
            )

        self._state = dataclasses.replace(
            state,
            chats={**state.chats, chat_id: chat},
            messages_by_chat={
                **state.messages_by_chat,
                chat_id: tuple(merge_messages(existing, [message])),
            },
        )
        self._record_arrival(chat_id, message.id)

        if provisional:
            self._schedule(self._enrich_provisional_chat(self._token, chat), f"enrich_{chat_id}")
        return True

    def add_webhook_message(self, raw: Any) -> bool:
        """Normalize and add a raw webhook message record."""
        message = normalize_webhook_message(raw)
        if message is None:
            log.debug("webhook_message_ignored")
            return False
        return self.add_message(message)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def handle_presence_event(self, raw: Any) -> bool:
        """Normalize and apply a raw presence event."""
        update = normalize_presence_update(raw)
        if update is None:
            log.debug("presence_event_ignored")
            return False
        return self.update_chat_presence(update)

    def update_chat_presence(self, update: PresenceUpdate) -> bool:
        """Apply an online state, last seen time or presence kind to a chat.

        Only chats already in the list are updated. Fields the update
        leaves as None keep their stored value.

        Returns:
            True if the chat changed.
        """
        if not self._token_alive(self._token, "update_chat_presence"):
            return False

        state = self._state
        chat = state.chats.get(update.chat_id)
        if chat is None or update.is_empty:
            return False

        changes: dict[str, Any] = {}
        if update.is_online is not None and update.is_online != chat.is_online:
            changes["is_online"] = update.is_online
        if update.last_seen is not None and update.last_seen != chat.last_seen:
            changes["last_seen"] = update.last_seen
        if update.presence and update.presence != chat.presence:
            changes["presence"] = update.presence
        if not changes:
            return False

        self._state = dataclasses.replace(
            state,
            chats={**state.chats, chat.id: dataclasses.replace(chat, **changes)},
        )
        log.debug(LogEventNames.PRESENCE_UPDATED, chat_id=chat.id, fields=sorted(changes))
        return True

    # ------------------------------------------------------------------
    # Read and acknowledgement state
    # ------------------------------------------------------------------

    async def mark_as_read(self, chat_id: str) -> bool:
        """Tell the provider the chat was read and reset its unread count.

        Failures are logged and leave the unread count unchanged.
        """
        token = self._token
        try:
            await self._provider.mark_as_read(chat_id, self._mark_read_hint)
        except Exception as e:
            log.warning("mark_as_read_failed", chat_id=chat_id, error=str(e))
            return False
        return self.update_chat_unread_count(chat_id, 0, token=token)

    def update_chat_unread_count(
        self,
        chat_id: str,
        count: int,
        token: CancellationToken | None = None,
    ) -> bool:
        """Set a chat's unread count, clamped at zero."""
        if not self._token_alive(token or self._token, "update_chat_unread_count"):
            return False
        state = self._state
        chat = state.chats.get(chat_id)
        if chat is None:
            return False
        self._state = dataclasses.replace(
            state,
            chats={**state.chats, chat_id: dataclasses.replace(chat, unread_count=max(0, count))},
        )
        return True

    def update_message_ack(self, chat_id: str, message_id: str, ack: Acknowledgement) -> bool:
        """Advance a message's acknowledgement.

        Acks only move forward; a stale or repeated ack is ignored. The
        chat's preview follows when it shows the same message.

        Returns:
            True if the message entry was replaced.
        """
        if not self._token_alive(self._token, "update_message_ack"):
            return False

        state = self._state
        messages = state.messages_by_chat.get(chat_id, ())
        current = next((message for message in messages if message.id == message_id), None)
        if current is None:
            return False
        if current.ack is not None and ack <= current.ack:
            log.debug("stale_ack_ignored", chat_id=chat_id, message_id=message_id, ack=ack.name)
            return False

        updated = dataclasses.replace(current, ack=ack)
        chats = state.chats
        chat = chats.get(chat_id)
        if chat is not None and _shows_message(chat, message_id):
            chats = {
                **chats,
                chat_id: dataclasses.replace(
                    chat,
                    last_message=dataclasses.replace(chat.last_message, ack=ack),
                ),
            }

        self._state = dataclasses.replace(
            state,
            chats=chats,
            messages_by_chat={
                **state.messages_by_chat,
                chat_id: tuple(_replace_message(messages, message_id, updated)),
            },
        )
        return True

    # ------------------------------------------------------------------
    # Session status
    # ------------------------------------------------------------------

    async def check_session_status(self) -> SessionStatus | None:
        """Fetch the session status once, outside the polling schedule.

        Raises:
            SyncError: If the status request fails.
        """
        token = self._token
        try:
            status = await self._poller.fetch_status()
        except Exception as e:
            log.warning(LogEventNames.SESSION_POLL_FAILED, error=str(e))
            self._report_failure(token, SESSION_STATUS_FAILED_TITLE, e)
            raise
        if status is not None and self._commit(
            token, "check_session_status", session_status=status
        ):
            self._follow_session_name(status)
        return status

    def apply_session_status(self, status: SessionStatus) -> None:
        """Store a polled session status unless the store has stopped.

        Later statuses without a name are labelled with this status's name.
        """
        if self._commit(self._token, "session_status", session_status=status):
            self._follow_session_name(status)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _token_alive(self, token: CancellationToken, operation: str) -> bool:
        if token.is_cancelled or token is not self._token:
            log.debug(LogEventNames.STALE_RESULT_DISCARDED, operation=operation)
            return False
        return True

    def _commit(self, token: CancellationToken, operation: str, **changes: Any) -> bool:
        """Replace the state with ``changes`` applied, if the token is live."""
        if not self._token_alive(token, operation):
            return False
        self._state = dataclasses.replace(self._state, **changes)
        return True

    async def _reload_chats(self, notify: bool) -> list[ChatOverview]:
        token = self._token
        self._chats_generation += 1
        generation = self._chats_generation
        page = await self._fetch_chat_page(token, 0, notify)
        if generation != self._chats_generation:
            log.debug(
                LogEventNames.STALE_RESULT_DISCARDED,
                operation="load_chats",
                generation=generation,
            )
            return page.chats

        if self._commit(token, "load_chats", chats={chat.id: chat for chat in page.chats}):
            self._chat_offset = page.next_offset
            self._has_more_chats = page.has_more
        return page.chats

    async def _fetch_chat_page(
        self,
        token: CancellationToken,
        offset: int,
        notify: bool,
    ) -> ChatPage:
        self._chat_fetches += 1
        try:
            return await self._chat_list.load_page(offset)
        except Exception as e:
            if notify:
                log.error(LogEventNames.CHATS_LOAD_FAILED, offset=offset, error=str(e))
                self._report_failure(token, CHATS_LOAD_FAILED_TITLE, e)
            raise
        finally:
            self._chat_fetches -= 1

    async def _refresh_chats_periodically(self, token: CancellationToken) -> None:
        while not token.is_cancelled:
            await asyncio.sleep(self._refresh_interval)
            if token.is_cancelled:
                return
            await self.refresh_chats()

    def _is_loading(self, chat_id: str) -> bool:
        return bool(self._arrival_logs.get(chat_id))

    def _track_arrivals(self, chat_id: str) -> set[str]:
        arrivals: set[str] = set()
        self._arrival_logs.setdefault(chat_id, []).append(arrivals)
        return arrivals

    def _untrack_arrivals(self, chat_id: str, arrivals: set[str]) -> None:
        logs = self._arrival_logs.get(chat_id, [])
        # Identity, not equality: two loads may have seen the same ids
        self._arrival_logs[chat_id] = [entry for entry in logs if entry is not arrivals]
        if not self._arrival_logs[chat_id]:
            del self._arrival_logs[chat_id]

    def _record_arrival(self, chat_id: str, message_id: str) -> None:
        for arrivals in self._arrival_logs.get(chat_id, ()):
            arrivals.add(message_id)

    def _follow_session_name(self, status: SessionStatus) -> None:
        if status.name and status.name != self._session_name:
            log.info("session_name_changed", previous=self._session_name, session=status.name)
            self._session_name = status.name
            self._poller.session_name = status.name

    def _apply_outgoing(self, message: Message) -> None:
        state = self._state
        chat_id = message.chat_id
        chat = state.chats.get(chat_id) or _placeholder_chat(chat_id)
        chat = dataclasses.replace(chat, last_message=LastMessagePreview.from_message(message))
        existing = state.messages_by_chat.get(chat_id, ())
        self._state = dataclasses.replace(
            state,
            chats={**state.chats, chat_id: chat},
            messages_by_chat={
                **state.messages_by_chat,
                chat_id: tuple(merge_messages(existing, [message])),
            },
        )

    def _rollback_send(
        self,
        token: CancellationToken,
        pending: Message,
        previous_chat: ChatOverview | None,
    ) -> None:
        if not self._token_alive(token, "send_rollback"):
            return

        state = self._state
        chat_id = pending.chat_id
        messages = tuple(
            message
            for message in state.messages_by_chat.get(chat_id, ())
            if message.id != pending.id
        )
        chats = dict(state.chats)
        chat = chats.get(chat_id)
        if previous_chat is None:
            chats.pop(chat_id, None)
        elif chat is not None and _shows_message(chat, pending.id):
            chats[chat_id] = dataclasses.replace(chat, last_message=previous_chat.last_message)

        self._state = dataclasses.replace(
            state,
            chats=chats,
            messages_by_chat={**state.messages_by_chat, chat_id: messages},
        )

    def _confirmed_message(self, pending: Message, raw: Any) -> Message:
        """Build the confirmed message from the send response.

        Fields the provider leaves out are taken from the pending message.
        """
        record = dict(raw) if isinstance(raw, Mapping) else {}
        # Some provider versions return the id as {"_serialized": ...}
        serialized_id = as_record(record.get("id"))
        if serialized_id is not None:
            record["id"] = serialized_id.get("_serialized")
        defaults = {"id": pending.id, "timestamp": pending.timestamp, "body": pending.body}
        merged = {**defaults, **{key: value for key, value in record.items() if value is not None}}
        confirmed = normalize_message(pending.chat_id, merged) or pending

        ack = confirmed.ack
        if ack is None or ack < Acknowledgement.SENT:
            ack = Acknowledgement.SENT
        return dataclasses.replace(
            confirmed,
            from_me=True,
            body=confirmed.body or pending.body,
            ack=ack,
        )

    async def _enrich_provisional_chat(self, token: CancellationToken, chat: ChatOverview) -> None:
        enriched = with_fallback_name(await self._chat_list.enrich(chat))
        if not self._token_alive(token, "enrich_chat"):
            return

        state = self._state
        current = state.chats.get(chat.id)
        if current is None:
            return
        merged = dataclasses.replace(
            current,
            name=current.name if current.has_name else enriched.name,
            avatar=current.avatar if current.has_avatar else enriched.avatar,
            picture=current.picture or enriched.picture,
        )
        self._state = dataclasses.replace(state, chats={**state.chats, chat.id: merged})

    def _schedule(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _mark_session_failed(self, token: CancellationToken) -> None:
        current = self._state.session_status
        name = (current.name if current else None) or self._session_name or DEFAULT_SESSION_NAME
        self._commit(
            token,
            "session_failed",
            session_status=SessionStatus(
                name=name,
                status=FAILED_STATUS,
                me_id=current.me_id if current else None,
                me_name=current.me_name if current else None,
            ),
        )

    def _report_failure(self, token: CancellationToken, title: str, error: Exception) -> None:
        if token.is_cancelled:
            return
        if isinstance(error, SessionUnavailableError):
            self._mark_session_failed(token)
        description = GENERIC_FAILURE_DESCRIPTION
        if isinstance(error, SyncError) and str(error):
            description = str(error)
        self._notify(title, description, NotificationLevel.ERROR)

    def _notify(self, title: str, description: str, level: NotificationLevel) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(title, description, level)
        except Exception as e:
            log.warning("notification_failed", title=title, error=str(e))
