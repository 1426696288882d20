"""Shared test fixtures for CRM Chat Sync."""

from __future__ import annotations

from typing import Any

import pytest

from crm_chat_sync.models import ConnectionConfig

CONTACT_ID = "5511999999999@c.us"
GROUP_ID = "120363025246125486@g.us"


class FakeProvider:
    """In-memory ChatProvider with per-method call tracking.

    Attributes can be replaced per test: ``chats``, ``chat_info`` (chat id ->
    record or exception), ``messages`` (chat id -> list of raw records),
    ``send_response``, ``session_payload`` and ``*_error`` to make a call fail.
    """

    def __init__(self) -> None:
        self.chats: list[Any] = []
        self.chat_info: dict[str, Any] = {}
        self.messages: dict[str, list[Any]] = {}
        self.send_response: dict[str, Any] = {}
        self.session_payload: dict[str, Any] = {"name": "default", "status": "WORKING"}

        self.overview_error: Exception | None = None
        self.messages_error: Exception | None = None
        self.send_error: Exception | None = None
        self.mark_read_error: Exception | None = None
        self.session_error: Exception | None = None

        self.overview_calls: list[tuple[int, int]] = []
        self.info_calls: list[str] = []
        self.message_calls: list[tuple[str, int, int, bool]] = []
        self.send_calls: list[tuple[str, str, bool]] = []
        self.mark_read_calls: list[tuple[str, int]] = []
        self.session_calls = 0

    async def get_chats_overview(self, limit: int, offset: int = 0) -> list[Any]:
        self.overview_calls.append((limit, offset))
        if self.overview_error:
            raise self.overview_error
        return self.chats[offset : offset + limit]

    async def get_chat_info(self, chat_id: str) -> dict[str, Any]:
        self.info_calls.append(chat_id)
        info = self.chat_info.get(chat_id, {})
        if isinstance(info, Exception):
            raise info
        return info

    async def get_chat_messages(
        self,
        chat_id: str,
        limit: int,
        offset: int = 0,
        download_media: bool = False,
    ) -> list[Any]:
        self.message_calls.append((chat_id, limit, offset, download_media))
        if self.messages_error:
            raise self.messages_error
        return self.messages.get(chat_id, [])[offset : offset + limit]

    async def send_text(self, chat_id: str, text: str, link_preview: bool = True) -> dict[str, Any]:
        self.send_calls.append((chat_id, text, link_preview))
        if self.send_error:
            raise self.send_error
        return self.send_response

    async def mark_as_read(self, chat_id: str, messages: int = 30) -> None:
        self.mark_read_calls.append((chat_id, messages))
        if self.mark_read_error:
            raise self.mark_read_error

    async def get_session_status(self) -> dict[str, Any]:
        self.session_calls += 1
        if self.session_error:
            raise self.session_error
        return self.session_payload


class RecordingNotifier:
    """Notifier that keeps every notification for assertions."""

    def __init__(self) -> None:
        self.notifications: list[tuple[str, str, Any]] = []

    def notify(self, title: str, description: str, level: Any) -> None:
        self.notifications.append((title, description, level))


def make_raw_chat(chat_id: str = CONTACT_ID, **overrides: Any) -> dict[str, Any]:
    """Build a raw chat overview record as the provider returns it."""
    record: dict[str, Any] = {
        "id": chat_id,
        "name": "Maria Silva",
        "picture": "https://cdn.example.com/maria.jpg",
        "unreadCount": 0,
        "lastMessage": {
            "id": "false_5511999999999@c.us_AAA",
            "body": "Bom dia",
            "timestamp": 1700000000,
            "fromMe": False,
            "ack": 3,
        },
    }
    record.update(overrides)
    return record


def make_raw_message(message_id: str, timestamp: float, **overrides: Any) -> dict[str, Any]:
    """Build a raw message record as the provider returns it."""
    record: dict[str, Any] = {
        "id": message_id,
        "timestamp": timestamp,
        "body": f"mensagem {message_id}",
        "fromMe": False,
        "hasMedia": False,
    }
    record.update(overrides)
    return record


@pytest.fixture
def fake_provider() -> FakeProvider:
    """Return an empty in-memory provider."""
    return FakeProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Return a notifier that records notifications."""
    return RecordingNotifier()


@pytest.fixture
def connection() -> ConnectionConfig:
    """Return a resolved connection for the fake WAHA server."""
    return ConnectionConfig(
        base_url="https://waha.example.com",
        api_key="waha-test-key-123456",
        session_name="Escritorio01",
    )


@pytest.fixture
def integration_record() -> dict[str, Any]:
    """Return a raw integration record from the CRM endpoint."""
    return {
        "apiUrl": "https://waha.example.com/",
        "key": "waha-test-key-123456",
        "environment": "Escritorio01",
    }
