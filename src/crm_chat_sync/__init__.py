"""Chat synchronization client for the legal-practice CRM."""

from crm_chat_sync._version import __version__

__all__ = ["__version__"]
