"""Abstract interface for the WhatsApp-bridging chat provider."""

from typing import Any, Protocol


class ChatProvider(Protocol):
    """Raw access to the provider's chat, message and session endpoints.

    Implementations return decoded JSON as-is; normalization into domain
    models happens in the synchronizers. Failures raise
    ProviderRequestError or one of its subclasses.
    """

    async def get_chats_overview(self, limit: int, offset: int = 0) -> list[Any]:
        """
        Fetch one page of chat overview records.

        Args:
            limit: Page size
            offset: Number of chats to skip

        Returns:
            Raw chat records (empty list if the payload is not a list)
        """
        ...

    async def get_chat_info(self, chat_id: str) -> dict[str, Any]:
        """
        Fetch the detailed record for a chat, used for enrichment.

        Raises:
            ChatNotFoundError: If the provider does not know the chat
        """
        ...

    async def get_chat_messages(
        self,
        chat_id: str,
        limit: int,
        offset: int = 0,
        download_media: bool = False,
    ) -> list[Any]:
        """
        Fetch one page of a chat's message history.

        Returns:
            Raw message records (empty list if the payload is not a list)
        """
        ...

    async def send_text(
        self,
        chat_id: str,
        text: str,
        link_preview: bool = True,
    ) -> dict[str, Any]:
        """
        Send a text message.

        Returns:
            The raw record of the created message
        """
        ...

    async def mark_as_read(self, chat_id: str, messages: int = 30) -> None:
        """
        Mark the latest messages of a chat as read.

        Args:
            chat_id: Target chat
            messages: Hint for how many recent messages to acknowledge
        """
        ...

    async def get_session_status(self) -> dict[str, Any]:
        """Fetch the status payload of the configured session."""
        ...
