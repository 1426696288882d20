"""Tests for the synchronization state store."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from conftest import (
    CONTACT_ID,
    GROUP_ID,
    FakeProvider,
    RecordingNotifier,
    make_raw_chat,
    make_raw_message,
)

from crm_chat_sync.adapters.provider.waha import SESSION_RECOVERY_MESSAGE
from crm_chat_sync.config.schema import PollingConfig, ProviderConfig
from crm_chat_sync.core.normalizers import normalize_message
from crm_chat_sync.core.store import PENDING_ID_PREFIX, SyncStore
from crm_chat_sync.interfaces.notifier import NotificationLevel
from crm_chat_sync.models import (
    Acknowledgement,
    Message,
    MessageType,
    PresenceUpdate,
    SessionStatus,
)
from crm_chat_sync.utils.async_helpers import (
    ProviderRequestError,
    SessionUnavailableError,
)

OTHER_ID = "5511888888888@c.us"


def make_store(
    provider: FakeProvider,
    notifier: RecordingNotifier | None = None,
    **overrides: Any,
) -> SyncStore:
    """Build a store with fast polling; overrides go to the matching config."""
    provider_fields: dict[str, Any] = {
        "message_page_size": 50,
        "mark_read_hint": 20,
        "link_preview": False,
    }
    polling_fields: dict[str, Any] = {
        "session_interval": 0.05,
        "poll_timeout": 0.05,
        "chats_refresh_interval": 0.0,
    }
    for key, value in overrides.items():
        (polling_fields if key in polling_fields else provider_fields)[key] = value
    return SyncStore(
        provider,
        notifier,
        ProviderConfig(**provider_fields),
        PollingConfig(**polling_fields),
        session_name="Escritorio01",
    )


def message(message_id: str, timestamp: int, chat_id: str = CONTACT_ID, **fields: Any) -> Message:
    defaults: dict[str, Any] = {"from_me": False, "type": MessageType.TEXT, "body": message_id}
    defaults.update(fields)
    return Message(id=message_id, chat_id=chat_id, timestamp=timestamp, **defaults)


async def settle_background(store: SyncStore) -> None:
    await asyncio.gather(*list(store._background_tasks))


class BlockingProvider(FakeProvider):
    """Provider whose overview and history calls wait for a release."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.block = False

    async def get_chats_overview(self, limit: int, offset: int = 0) -> list[Any]:
        if self.block:
            await self.release.wait()
        return await super().get_chats_overview(limit, offset)

    async def get_chat_messages(
        self,
        chat_id: str,
        limit: int,
        offset: int = 0,
        download_media: bool = False,
    ) -> list[Any]:
        if self.block:
            await self.release.wait()
        return await super().get_chat_messages(chat_id, limit, offset, download_media)


@pytest.fixture
def provider(fake_provider: FakeProvider) -> FakeProvider:
    """Return a provider with one contact chat and a short history."""
    fake_provider.chats = [make_raw_chat(CONTACT_ID, unreadCount=2)]
    fake_provider.messages[CONTACT_ID] = [
        make_raw_message("m2", 1700000200),
        make_raw_message("m1", 1700000100),
    ]
    return fake_provider


class TestLifecycle:
    """Test start and stop."""

    async def test_start_loads_chats_and_polls(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test start populates chats and the session status."""
        store = make_store(provider, notifier)

        await store.start()
        await asyncio.sleep(0.01)

        assert store.is_running is True
        assert [chat.id for chat in store.chats] == [CONTACT_ID]
        assert store.session_status is not None
        assert store.session_status.is_working

        await store.stop()
        assert store.is_running is False

    async def test_start_survives_chat_load_failure(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a failed initial load is reported and polling still runs."""
        provider.overview_error = ProviderRequestError("HTTP error! status: 500", 500)

        async with make_store(provider, notifier) as store:
            await asyncio.sleep(0.01)
            assert store.chats == []
            assert store.session_status is not None

        assert notifier.notifications[0][0] == "Erro ao carregar conversas"
        assert notifier.notifications[0][2] is NotificationLevel.ERROR

    async def test_no_status_updates_after_stop(self, provider: FakeProvider) -> None:
        """Test a poll tick after teardown does not touch state."""
        store = make_store(provider)
        await store.start()
        await store.stop()
        before = store.session_status

        provider.session_payload = {"name": "Escritorio01", "status": "STOPPED"}
        await asyncio.sleep(0.12)
        store.apply_session_status(SessionStatus(name="Escritorio01", status="STOPPED"))

        assert store.session_status == before

    async def test_late_chat_load_is_discarded(self) -> None:
        """Test a chat load resolving after stop does not mutate state."""
        provider = BlockingProvider()
        store = make_store(provider)
        await store.start()

        provider.chats = [make_raw_chat(CONTACT_ID)]
        provider.block = True
        pending = asyncio.create_task(store.load_chats())
        await asyncio.sleep(0)
        await store.stop()

        provider.release.set()
        chats = await pending

        assert [chat.id for chat in chats] == [CONTACT_ID]
        assert store.chats == []

    async def test_late_message_load_is_discarded(self, provider: FakeProvider) -> None:
        """Test a history load resolving after stop does not mutate state."""
        blocking = BlockingProvider()
        blocking.messages = provider.messages
        store = make_store(blocking)
        await store.start()

        blocking.block = True
        pending = asyncio.create_task(store.load_messages(CONTACT_ID))
        await asyncio.sleep(0)
        await store.stop()
        blocking.release.set()
        await pending

        assert store.messages_for(CONTACT_ID) == []


class TestLoading:
    """Test chat and message loading."""

    async def test_load_chats_replaces_state(self, provider: FakeProvider) -> None:
        """Test a second load replaces rather than appends."""
        store = make_store(provider)
        await store.load_chats()

        provider.chats = [make_raw_chat(OTHER_ID, name="Carlos")]
        await store.load_chats()

        assert [chat.id for chat in store.chats] == [OTHER_ID]

    async def test_load_chats_failure_keeps_state(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a failed reload keeps the last known good list."""
        store = make_store(provider, notifier)
        await store.load_chats()

        provider.overview_error = ProviderRequestError("HTTP error! status: 500", 500)
        with pytest.raises(ProviderRequestError):
            await store.load_chats()

        assert [chat.id for chat in store.chats] == [CONTACT_ID]
        assert notifier.notifications == [
            ("Erro ao carregar conversas", "HTTP error! status: 500", NotificationLevel.ERROR)
        ]

    async def test_session_unavailable_marks_failed(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a 422 marks the session failed with the recovery message."""
        store = make_store(provider, notifier)
        provider.overview_error = SessionUnavailableError(SESSION_RECOVERY_MESSAGE, 422)

        with pytest.raises(SessionUnavailableError):
            await store.load_chats()

        assert store.session_status is not None
        assert store.session_status.status == "FAILED"
        assert store.session_status.name == "Escritorio01"
        assert notifier.notifications[-1][1] == SESSION_RECOVERY_MESSAGE

    async def test_load_messages(self, provider: FakeProvider) -> None:
        """Test history is stored sorted by timestamp."""
        store = make_store(provider)

        messages = await store.load_messages(CONTACT_ID)

        assert [m.id for m in messages] == ["m1", "m2"]
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m1", "m2"]

    async def test_load_messages_failure_keeps_list(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a failed history reload keeps the stored messages."""
        store = make_store(provider, notifier)
        await store.load_messages(CONTACT_ID)

        provider.messages_error = ProviderRequestError("HTTP error! status: 503", 503)
        with pytest.raises(ProviderRequestError):
            await store.load_messages(CONTACT_ID)

        assert len(store.messages_for(CONTACT_ID)) == 2
        assert notifier.notifications[-1][0] == "Erro ao carregar mensagens"

    async def test_unexpected_error_uses_generic_description(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test non-sync errors get a generic user-facing description."""
        store = make_store(provider, notifier)
        provider.overview_error = RuntimeError("internal detail")

        with pytest.raises(RuntimeError):
            await store.load_chats()

        assert "internal detail" not in notifier.notifications[-1][1]


class TestSelectChat:
    """Test chat selection."""

    async def test_select_loads_once(self, provider: FakeProvider) -> None:
        """Test selecting twice only fetches the history once."""
        store = make_store(provider)
        await store.load_chats()

        await store.select_chat(CONTACT_ID)
        await store.select_chat(CONTACT_ID)

        assert len(provider.message_calls) == 1
        assert store.active_chat_id == CONTACT_ID
        assert [m.id for m in store.active_chat_messages] == ["m1", "m2"]

    async def test_select_marks_read(self, provider: FakeProvider) -> None:
        """Test selecting resets the unread count after marking as read."""
        store = make_store(provider)
        await store.load_chats()
        assert store.get_chat(CONTACT_ID).unread_count == 2  # type: ignore[union-attr]

        await store.select_chat(CONTACT_ID)

        assert provider.mark_read_calls == [(CONTACT_ID, 20)]
        assert store.active_chat is not None
        assert store.active_chat.unread_count == 0

    async def test_mark_read_failure_is_not_fatal(self, provider: FakeProvider) -> None:
        """Test a failed read-marking keeps the unread count."""
        provider.mark_read_error = ProviderRequestError("HTTP error! status: 500", 500)
        store = make_store(provider)
        await store.load_chats()

        await store.select_chat(CONTACT_ID)

        assert store.active_chat is not None
        assert store.active_chat.unread_count == 2

    async def test_select_unknown_chat_adds_placeholder(self, provider: FakeProvider) -> None:
        """Test an unknown chat gets a placeholder named after its number."""
        store = make_store(provider)

        await store.select_chat(GROUP_ID)

        assert store.active_chat is not None
        assert store.active_chat.name == "120363025246125486"
        assert store.active_chat.is_group is True
        assert store.active_chat_messages == []

    async def test_failed_first_load_is_retried(self, provider: FakeProvider) -> None:
        """Test a chat whose history failed to load is fetched again next time."""
        store = make_store(provider)
        provider.messages_error = ProviderRequestError("HTTP error! status: 500", 500)

        with pytest.raises(ProviderRequestError):
            await store.select_chat(CONTACT_ID)

        provider.messages_error = None
        await store.select_chat(CONTACT_ID)

        assert len(provider.message_calls) == 2
        assert len(store.active_chat_messages) == 2

    async def test_no_selection(self, provider: FakeProvider) -> None:
        """Test derived values without an active chat."""
        store = make_store(provider)
        assert store.active_chat_id is None
        assert store.active_chat is None
        assert store.active_chat_messages == []


class TestSendMessage:
    """Test sending with an optimistic local entry."""

    async def test_send_updates_messages_and_preview(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a sent message shows up in the active chat and its preview."""
        provider.send_response = {"id": "true_5511999999999@c.us_XYZ", "timestamp": 1800000000}
        store = make_store(provider, notifier)
        await store.load_chats()
        await store.select_chat(CONTACT_ID)

        sent = await store.send_message(CONTACT_ID, "  hello  ")

        assert sent is not None
        assert sent.id == "true_5511999999999@c.us_XYZ"
        assert sent.body == "hello"
        assert sent.from_me is True
        assert sent.ack is Acknowledgement.SENT
        assert sent.timestamp == 1800000000000

        hello = [m for m in store.active_chat_messages if m.body == "hello"]
        assert len(hello) == 1
        assert hello[0].from_me is True
        assert not any(m.id.startswith(PENDING_ID_PREFIX) for m in store.active_chat_messages)

        chat = store.get_chat(CONTACT_ID)
        assert chat is not None and chat.last_message is not None
        assert chat.last_message.body == "hello"
        assert chat.last_message.id == sent.id

        assert provider.send_calls == [(CONTACT_ID, "hello", False)]
        assert notifier.notifications[-1] == ("Mensagem enviada", "hello", NotificationLevel.INFO)

    async def test_send_with_sparse_response(self, provider: FakeProvider) -> None:
        """Test a response without id or timestamp keeps the local values."""
        store = make_store(provider)
        await store.load_chats()

        sent = await store.send_message(CONTACT_ID, "hello")

        assert sent is not None
        assert sent.id.startswith(PENDING_ID_PREFIX)
        assert sent.body == "hello"
        assert sent.ack is Acknowledgement.SENT

    async def test_send_with_serialized_id(self, provider: FakeProvider) -> None:
        """Test an id object is unwrapped."""
        provider.send_response = {"id": {"_serialized": "true_abc", "fromMe": True}, "ack": 2}
        store = make_store(provider)

        sent = await store.send_message(CONTACT_ID, "hello")

        assert sent is not None
        assert sent.id == "true_abc"
        assert sent.ack is Acknowledgement.DELIVERED

    async def test_blank_text_is_not_sent(self, provider: FakeProvider) -> None:
        """Test blank messages are ignored."""
        store = make_store(provider)
        assert await store.send_message(CONTACT_ID, "   ") is None
        assert provider.send_calls == []

    async def test_send_failure_rolls_back(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a failed send restores the previous messages and preview."""
        store = make_store(provider, notifier)
        await store.load_chats()
        await store.select_chat(CONTACT_ID)
        previous_preview = store.get_chat(CONTACT_ID).last_message  # type: ignore[union-attr]

        provider.send_error = ProviderRequestError("HTTP error! status: 500", 500)
        with pytest.raises(ProviderRequestError):
            await store.send_message(CONTACT_ID, "hello")

        assert [m.id for m in store.active_chat_messages] == ["m1", "m2"]
        chat = store.get_chat(CONTACT_ID)
        assert chat is not None
        assert chat.last_message == previous_preview
        assert notifier.notifications[-1][0] == "Erro ao enviar mensagem"

    async def test_send_failure_to_new_chat_removes_it(self, provider: FakeProvider) -> None:
        """Test a failed send to an unknown chat leaves no chat behind."""
        store = make_store(provider)
        provider.send_error = ProviderRequestError("HTTP error! status: 500", 500)

        with pytest.raises(ProviderRequestError):
            await store.send_message(OTHER_ID, "hello")

        assert store.get_chat(OTHER_ID) is None
        assert store.messages_for(OTHER_ID) == []


class TestAddMessage:
    """Test provider-pushed messages."""

    async def test_inbound_increments_unread(self, provider: FakeProvider) -> None:
        """Test an inbound message is appended and counted as unread."""
        store = make_store(provider)
        await store.load_chats()
        await store.load_messages(CONTACT_ID)

        added = store.add_message(message("m3", 1800000000000))

        assert added is True
        chat = store.get_chat(CONTACT_ID)
        assert chat is not None
        assert chat.unread_count == 3
        assert chat.last_message is not None and chat.last_message.body == "m3"
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m1", "m2", "m3"]

    async def test_self_authored_does_not_increment(self, provider: FakeProvider) -> None:
        """Test messages sent from another device do not count as unread."""
        store = make_store(provider)
        await store.load_chats()

        store.add_message(message("m3", 1800000000000, from_me=True))

        assert store.get_chat(CONTACT_ID).unread_count == 2  # type: ignore[union-attr]

    async def test_duplicate_is_ignored(self, provider: FakeProvider) -> None:
        """Test a message id already stored is not added twice."""
        store = make_store(provider)
        await store.load_chats()
        await store.load_messages(CONTACT_ID)

        assert store.add_message(message("m2", 1700000200000)) is False
        assert len(store.messages_for(CONTACT_ID)) == 2
        assert store.get_chat(CONTACT_ID).unread_count == 2  # type: ignore[union-attr]

    async def test_older_message_keeps_order_and_preview(self, provider: FakeProvider) -> None:
        """Test a late-arriving older message is inserted in timestamp order."""
        store = make_store(provider)
        await store.load_chats()
        await store.load_messages(CONTACT_ID)

        store.add_message(message("m0", 1600000000000))

        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m0", "m1", "m2"]
        assert store.get_chat(CONTACT_ID).last_message.body == "Bom dia"  # type: ignore[union-attr]

    async def test_unknown_chat_is_created_and_enriched(self, provider: FakeProvider) -> None:
        """Test a message for an unknown chat creates and enriches it."""
        provider.chat_info = {OTHER_ID: {"contact": {"pushname": "Carlos"}}}
        store = make_store(provider)

        store.add_message(message("x1", 1800000000000, chat_id=OTHER_ID))
        provisional = store.get_chat(OTHER_ID)
        assert provisional is not None
        assert provisional.unread_count == 1

        await settle_background(store)

        chat = store.get_chat(OTHER_ID)
        assert chat is not None
        assert chat.name == "Carlos"
        assert chat.unread_count == 1
        assert provider.info_calls == [OTHER_ID]

    async def test_unknown_chat_enrichment_failure_uses_phone(self, provider: FakeProvider) -> None:
        """Test a failed enrichment still names the chat after its number."""
        provider.chat_info = {OTHER_ID: ProviderRequestError("HTTP error! status: 500", 500)}
        store = make_store(provider)

        store.add_message(message("x1", 1800000000000, chat_id=OTHER_ID, from_me=True))
        await settle_background(store)

        chat = store.get_chat(OTHER_ID)
        assert chat is not None
        assert chat.name == "5511888888888"
        assert chat.unread_count == 0

    async def test_add_after_stop_is_ignored(self, provider: FakeProvider) -> None:
        """Test pushes after teardown do not mutate state."""
        store = make_store(provider)
        await store.start()
        await store.stop()

        assert store.add_message(message("m9", 1800000000000)) is False
        assert store.messages_for(CONTACT_ID) == []

    async def test_add_webhook_message(self, provider: FakeProvider) -> None:
        """Test a raw webhook event is normalized and added."""
        store = make_store(provider)
        await store.load_chats()

        payload = make_raw_message("w1", 1800000000, **{"from": CONTACT_ID})
        event = {"event": "message", "payload": payload}

        assert store.add_webhook_message(event) is True
        assert store.add_webhook_message({"payload": {"id": "w2"}}) is False
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["w1"]


class TestAcknowledgements:
    """Test the acknowledgement state machine."""

    async def test_ack_advances_and_mirrors_preview(self, provider: FakeProvider) -> None:
        """Test an ack update replaces the entry and follows into the preview."""
        store = make_store(provider)
        await store.load_chats()
        sent = normalize_message(
            CONTACT_ID, make_raw_message("s1", 1800000000, fromMe=True, ack=1)
        )
        assert sent is not None
        store.add_message(sent)

        assert store.update_message_ack(CONTACT_ID, "s1", Acknowledgement.READ) is True

        stored = store.messages_for(CONTACT_ID)[0]
        assert stored.ack is Acknowledgement.READ
        chat = store.get_chat(CONTACT_ID)
        assert chat is not None and chat.last_message is not None
        assert chat.last_message.ack is Acknowledgement.READ

    async def test_ack_never_moves_backwards(self, provider: FakeProvider) -> None:
        """Test stale or repeated acks are ignored."""
        store = make_store(provider)
        await store.load_chats()
        store.add_message(
            message("s1", 1800000000000, from_me=True, ack=Acknowledgement.DELIVERED)
        )

        assert store.update_message_ack(CONTACT_ID, "s1", Acknowledgement.SENT) is False
        assert store.update_message_ack(CONTACT_ID, "s1", Acknowledgement.DELIVERED) is False
        assert store.messages_for(CONTACT_ID)[0].ack is Acknowledgement.DELIVERED

    async def test_ack_for_unknown_message(self, provider: FakeProvider) -> None:
        """Test acks for unknown messages are ignored."""
        store = make_store(provider)
        assert store.update_message_ack(CONTACT_ID, "nope", Acknowledgement.READ) is False

    async def test_unread_count_is_clamped(self, provider: FakeProvider) -> None:
        """Test unread counts cannot go negative."""
        store = make_store(provider)
        await store.load_chats()

        assert store.update_chat_unread_count(CONTACT_ID, -4) is True
        assert store.get_chat(CONTACT_ID).unread_count == 0  # type: ignore[union-attr]
        assert store.update_chat_unread_count(OTHER_ID, 3) is False


class TestSessionStatus:
    """Test on-demand session checks."""

    async def test_check_session_status(self, provider: FakeProvider) -> None:
        """Test a manual check stores the status."""
        provider.session_payload = {"name": "Escritorio01", "status": "SCAN_QR_CODE"}
        store = make_store(provider)

        status = await store.check_session_status()

        assert status is not None
        assert store.session_status == status
        assert status.is_working is False

    async def test_check_session_unavailable(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a 422 on a manual check marks the session failed."""
        provider.session_error = SessionUnavailableError(SESSION_RECOVERY_MESSAGE, 422)
        store = make_store(provider, notifier)

        with pytest.raises(SessionUnavailableError):
            await store.check_session_status()

        assert store.session_status is not None
        assert store.session_status.status == "FAILED"
        assert notifier.notifications[-1][1] == SESSION_RECOVERY_MESSAGE

    async def test_status_without_name_keeps_applied_session(self, provider: FakeProvider) -> None:
        """Test an unnamed status is labelled with the last applied session."""
        store = make_store(provider)
        store.apply_session_status(SessionStatus(name="Plantao", status="WORKING"))

        provider.session_payload = {"status": "SCAN_QR_CODE"}
        status = await store.check_session_status()

        assert store.session_name == "Plantao"
        assert status is not None
        assert status.name == "Plantao"

    async def test_polled_status_follows_session_switch(self, provider: FakeProvider) -> None:
        """Test later unnamed poll results carry the switched session name."""
        provider.session_payload = {"name": "Plantao", "status": "WORKING"}
        async with make_store(provider) as store:
            await asyncio.sleep(0.01)
            assert store.session_status is not None
            assert store.session_status.name == "Plantao"

            provider.session_payload = {"status": "STARTING"}
            await asyncio.sleep(0.08)

            assert store.session_status.status == "STARTING"
            assert store.session_status.name == "Plantao"

    async def test_failed_session_uses_switched_name(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a 422 after a session switch marks the switched session failed."""
        provider.session_payload = {"name": "Plantao", "status": "WORKING"}
        store = make_store(provider, notifier)
        await store.check_session_status()

        provider.overview_error = SessionUnavailableError(SESSION_RECOVERY_MESSAGE, 422)
        with pytest.raises(SessionUnavailableError):
            await store.load_chats()

        assert store.session_status is not None
        assert store.session_status.status == "FAILED"
        assert store.session_status.name == "Plantao"


class TestConcurrentHistoryLoad:
    """Test local changes made while a chat's history is loading."""

    @pytest.fixture
    def blocking(self, provider: FakeProvider) -> BlockingProvider:
        """Return a blocking provider with the shared chat and history."""
        blocking = BlockingProvider()
        blocking.chats = provider.chats
        blocking.messages = provider.messages
        return blocking

    async def test_send_during_load_is_kept(self, blocking: BlockingProvider) -> None:
        """Test a message sent while the history loads survives the load."""
        blocking.send_response = {"id": "true_sent", "timestamp": 1800000000}
        store = make_store(blocking)
        await store.load_chats()

        blocking.block = True
        loading = asyncio.create_task(store.select_chat(CONTACT_ID))
        await asyncio.sleep(0)
        sent = await store.send_message(CONTACT_ID, "hello")
        blocking.release.set()
        await loading

        assert sent is not None
        assert [m.id for m in store.active_chat_messages] == ["m1", "m2", "true_sent"]
        assert "hello" in [m.body for m in store.active_chat_messages]
        chat = store.get_chat(CONTACT_ID)
        assert chat is not None and chat.last_message is not None
        assert chat.last_message.id == "true_sent"

    async def test_pending_send_survives_load(self, blocking: BlockingProvider) -> None:
        """Test a send still awaiting the provider is kept by a finishing load."""
        store = make_store(blocking)
        await store.load_chats()
        release_send = asyncio.Event()
        original_send = blocking.send_text

        async def slow_send(chat_id: str, text: str, link_preview: bool = True) -> Any:
            await release_send.wait()
            return await original_send(chat_id, text, link_preview)

        blocking.send_text = slow_send  # type: ignore[method-assign]
        blocking.send_response = {"id": "true_late", "timestamp": 1800000000}

        sending = asyncio.create_task(store.send_message(CONTACT_ID, "hello"))
        await asyncio.sleep(0)
        await store.select_chat(CONTACT_ID)

        bodies = [m.body for m in store.active_chat_messages]
        assert bodies[-1] == "hello"
        assert store.active_chat_messages[-1].id.startswith(PENDING_ID_PREFIX)

        release_send.set()
        await sending
        assert [m.id for m in store.active_chat_messages] == ["m1", "m2", "true_late"]

    async def test_webhook_during_load_is_kept(self, blocking: BlockingProvider) -> None:
        """Test a pushed message arriving while the history loads survives the load."""
        store = make_store(blocking)
        await store.load_chats()

        blocking.block = True
        loading = asyncio.create_task(store.select_chat(CONTACT_ID))
        await asyncio.sleep(0)
        event = {
            "event": "message",
            "payload": make_raw_message("w1", 1800000000, **{"from": CONTACT_ID}),
        }
        assert store.add_webhook_message(event) is True
        blocking.release.set()
        await loading

        assert [m.id for m in store.active_chat_messages] == ["m1", "m2", "w1"]
        chat = store.get_chat(CONTACT_ID)
        assert chat is not None and chat.last_message is not None
        assert chat.last_message.id == "w1"

    async def test_pushed_copy_of_fetched_message_is_not_duplicated(
        self, blocking: BlockingProvider
    ) -> None:
        """Test a message both pushed and fetched is stored once."""
        store = make_store(blocking)
        await store.load_chats()

        blocking.block = True
        loading = asyncio.create_task(store.load_messages(CONTACT_ID))
        await asyncio.sleep(0)
        store.add_message(message("m2", 1700000200000))
        blocking.release.set()
        await loading

        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m1", "m2"]

    async def test_ack_seen_during_reload_is_kept(self, blocking: BlockingProvider) -> None:
        """Test a reload does not move an acknowledgement backwards."""
        blocking.messages[CONTACT_ID] = [
            make_raw_message("s1", 1700000300, fromMe=True, ack=1),
            *blocking.messages[CONTACT_ID],
        ]
        store = make_store(blocking)
        await store.load_messages(CONTACT_ID)

        blocking.block = True
        reloading = asyncio.create_task(store.load_messages(CONTACT_ID))
        await asyncio.sleep(0)
        assert store.update_message_ack(CONTACT_ID, "s1", Acknowledgement.READ) is True
        blocking.release.set()
        await reloading

        stored = {m.id: m for m in store.messages_for(CONTACT_ID)}
        assert stored["s1"].ack is Acknowledgement.READ

    async def test_messages_from_before_the_load_are_replaced(self, provider: FakeProvider) -> None:
        """Test a load replaces messages that did not arrive while it ran."""
        store = make_store(provider)
        await store.load_chats()
        store.add_message(message("gone", 1600000000000))

        await store.load_messages(CONTACT_ID)

        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m1", "m2"]


class TestChatPaging:
    """Test chat list paging, overlapping loads and refresh."""

    @pytest.fixture
    def paged(self, fake_provider: FakeProvider) -> FakeProvider:
        """Return a provider with five chats."""
        fake_provider.chats = [
            make_raw_chat(f"55110000000{i:02d}@c.us", name=f"Contato {i}") for i in range(5)
        ]
        return fake_provider

    async def test_load_more_merges_next_pages(self, paged: FakeProvider) -> None:
        """Test pages are appended until a short page ends the list."""
        store = make_store(paged, chat_page_size=2)
        await store.load_chats()
        assert len(store.chats) == 2
        assert store.has_more_chats is True

        assert len(await store.load_more_chats()) == 2
        assert len(store.chats) == 4
        assert len(await store.load_more_chats()) == 1
        assert len(store.chats) == 5
        assert store.has_more_chats is False

        assert await store.load_more_chats() == []
        assert paged.overview_calls == [(2, 0), (2, 2), (2, 4)]

    async def test_load_more_updates_known_chats(self, paged: FakeProvider) -> None:
        """Test a chat repeated on the next page takes the newer entry."""
        store = make_store(paged, chat_page_size=2)
        await store.load_chats()

        paged.chats[2] = make_raw_chat(paged.chats[0]["id"], name="Renomeado")
        await store.load_more_chats()

        assert store.get_chat(paged.chats[0]["id"]).name == "Renomeado"  # type: ignore[union-attr]
        assert len(store.chats) == 3

    async def test_load_more_before_first_load(self, paged: FakeProvider) -> None:
        """Test nothing is fetched before the first page is known."""
        store = make_store(paged, chat_page_size=2)
        assert await store.load_more_chats() == []
        assert paged.overview_calls == []

    async def test_reload_resets_paging(self, paged: FakeProvider) -> None:
        """Test a reload replaces appended pages and starts over."""
        store = make_store(paged, chat_page_size=2)
        await store.load_chats()
        await store.load_more_chats()

        await store.load_chats()
        await store.load_more_chats()

        assert len(store.chats) == 4
        assert paged.overview_calls == [(2, 0), (2, 2), (2, 0), (2, 2)]

    async def test_overlapping_loads_keep_latest(self) -> None:
        """Test a slow earlier load does not overwrite a later one."""
        provider = BlockingProvider()
        store = make_store(provider)

        provider.chats = [make_raw_chat(CONTACT_ID)]
        provider.block = True
        slow = asyncio.create_task(store.load_chats())
        await asyncio.sleep(0)

        provider.block = False
        provider.chats = [make_raw_chat(OTHER_ID, name="Carlos")]
        await store.load_chats()

        provider.chats = [make_raw_chat(CONTACT_ID)]
        provider.release.set()
        await slow

        assert [chat.id for chat in store.chats] == [OTHER_ID]

    async def test_reload_drops_page_in_flight(self) -> None:
        """Test a page fetched across a reload is not merged."""
        provider = BlockingProvider()
        provider.chats = [make_raw_chat(f"55110000000{i:02d}@c.us") for i in range(3)]
        store = make_store(provider, chat_page_size=2)
        await store.load_chats()

        provider.block = True
        more = asyncio.create_task(store.load_more_chats())
        await asyncio.sleep(0)
        provider.block = False
        await store.load_chats()
        provider.release.set()

        assert await more == []
        assert len(store.chats) == 2
        assert store.has_more_chats is True

    async def test_load_more_while_fetching_is_skipped(self) -> None:
        """Test a second page request waits for the first one to finish."""
        provider = BlockingProvider()
        provider.chats = [make_raw_chat(f"55110000000{i:02d}@c.us") for i in range(5)]
        store = make_store(provider, chat_page_size=2)
        await store.load_chats()

        provider.block = True
        first = asyncio.create_task(store.load_more_chats())
        await asyncio.sleep(0)
        assert await store.load_more_chats() == []
        provider.release.set()
        await first

        assert len(store.chats) == 4
        assert len(provider.overview_calls) == 2

    async def test_refresh_failure_is_silent(
        self, provider: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a failed refresh keeps chats and notifies nobody."""
        store = make_store(provider, notifier)
        await store.load_chats()

        provider.overview_error = ProviderRequestError("HTTP error! status: 500", 500)
        await store.refresh_chats()

        assert [chat.id for chat in store.chats] == [CONTACT_ID]
        assert notifier.notifications == []

    async def test_periodic_refresh_runs_until_stop(self, provider: FakeProvider) -> None:
        """Test the chat list is reloaded on the refresh interval."""
        store = make_store(provider, chats_refresh_interval=0.02)
        await store.start()

        provider.chats = [*provider.chats, make_raw_chat(OTHER_ID, name="Carlos")]
        await asyncio.sleep(0.1)
        assert {chat.id for chat in store.chats} == {CONTACT_ID, OTHER_ID}

        await store.stop()
        calls = len(provider.overview_calls)
        await asyncio.sleep(0.06)
        assert len(provider.overview_calls) == calls

    async def test_refresh_disabled_by_zero_interval(self, provider: FakeProvider) -> None:
        """Test a zero interval loads the list only on start."""
        async with make_store(provider) as store:
            await asyncio.sleep(0.03)
            assert store.chats
        assert len(provider.overview_calls) == 1


class TestOlderMessages:
    """Test paging further back into a chat's history."""

    @pytest.fixture
    def history(self, provider: FakeProvider) -> FakeProvider:
        """Return a provider with five messages, newest first."""
        provider.messages[CONTACT_ID] = [
            make_raw_message(f"m{i}", 1700000000 + i) for i in reversed(range(5))
        ]
        return provider

    async def test_pages_back_until_exhausted(self, history: FakeProvider) -> None:
        """Test each call inserts the next older page."""
        store = make_store(history, message_page_size=2, max_message_pages=1)
        await store.load_messages(CONTACT_ID)
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m3", "m4"]
        assert store.has_older_messages(CONTACT_ID) is True

        older = await store.load_older_messages(CONTACT_ID)
        assert [m.id for m in older] == ["m1", "m2"]
        older = await store.load_older_messages(CONTACT_ID)
        assert [m.id for m in older] == ["m0"]
        assert store.has_older_messages(CONTACT_ID) is False

        assert await store.load_older_messages(CONTACT_ID) == []
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m0", "m1", "m2", "m3", "m4"]
        assert [offset for _, _, offset, _ in history.message_calls] == [0, 2, 4]

    async def test_known_messages_are_not_reinserted(self, history: FakeProvider) -> None:
        """Test a page shifted by a new message only inserts unseen ones."""
        store = make_store(history, message_page_size=2, max_message_pages=1)
        await store.load_messages(CONTACT_ID)

        history.messages[CONTACT_ID].insert(0, make_raw_message("m5", 1700000005))
        older = await store.load_older_messages(CONTACT_ID)

        assert [m.id for m in older] == ["m2"]
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m2", "m3", "m4"]

    async def test_unloaded_chat_gets_full_load(self, history: FakeProvider) -> None:
        """Test paging back in a chat never loaded loads its history."""
        store = make_store(history)

        older = await store.load_older_messages(CONTACT_ID)

        assert [m.id for m in older] == ["m0", "m1", "m2", "m3", "m4"]
        assert store.has_older_messages(CONTACT_ID) is False

    async def test_failure_keeps_messages(
        self, history: FakeProvider, notifier: RecordingNotifier
    ) -> None:
        """Test a failed page keeps what is stored and can be retried."""
        store = make_store(history, notifier, message_page_size=2, max_message_pages=1)
        await store.load_messages(CONTACT_ID)

        history.messages_error = ProviderRequestError("HTTP error! status: 500", 500)
        with pytest.raises(ProviderRequestError):
            await store.load_older_messages(CONTACT_ID)
        assert [m.id for m in store.messages_for(CONTACT_ID)] == ["m3", "m4"]
        assert notifier.notifications[-1][0] == "Erro ao carregar mensagens"

        history.messages_error = None
        assert [m.id for m in await store.load_older_messages(CONTACT_ID)] == ["m1", "m2"]


class TestPresence:
    """Test presence updates for listed chats."""

    async def test_presence_event_updates_chat(self, provider: FakeProvider) -> None:
        """Test a raw presence event sets the chat's online state."""
        store = make_store(provider)
        await store.load_chats()

        event = {"event": "presence.update", "payload": {"id": CONTACT_ID, "presence": "online"}}
        assert store.handle_presence_event(event) is True
        assert store.handle_presence_event(event) is False

        chat = store.get_chat(CONTACT_ID)
        assert chat is not None
        assert chat.presence == "online"

    async def test_partial_update_keeps_other_fields(self, provider: FakeProvider) -> None:
        """Test fields missing from an update keep their stored values."""
        store = make_store(provider)
        await store.load_chats()
        store.update_chat_presence(
            PresenceUpdate(CONTACT_ID, is_online=True, last_seen=1700000000000, presence="online")
        )

        assert store.update_chat_presence(PresenceUpdate(CONTACT_ID, is_online=False)) is True

        chat = store.get_chat(CONTACT_ID)
        assert chat is not None
        assert chat.is_online is False
        assert chat.last_seen == 1700000000000
        assert chat.presence == "online"

    async def test_unknown_chat_is_not_created(self, provider: FakeProvider) -> None:
        """Test presence for a chat outside the list is ignored."""
        store = make_store(provider)
        await store.load_chats()

        assert store.update_chat_presence(PresenceUpdate(OTHER_ID, is_online=True)) is False
        assert store.get_chat(OTHER_ID) is None

    async def test_unusable_events_are_ignored(self, provider: FakeProvider) -> None:
        """Test events without a chat id or without fields change nothing."""
        store = make_store(provider)
        await store.load_chats()
        before = store.get_chat(CONTACT_ID)

        assert store.handle_presence_event({"presence": "online"}) is False
        assert store.handle_presence_event({"chatId": CONTACT_ID}) is False
        assert store.get_chat(CONTACT_ID) == before

    async def test_presence_after_stop_is_ignored(self, provider: FakeProvider) -> None:
        """Test presence updates after teardown do not mutate state."""
        store = make_store(provider)
        await store.start()
        await store.stop()

        assert store.update_chat_presence(PresenceUpdate(CONTACT_ID, is_online=True)) is False
