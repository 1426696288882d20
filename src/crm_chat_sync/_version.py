"""Version information for CRM Chat Sync."""

from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION_NAME = "crm-chat-sync"

try:
    __version__ = version(DISTRIBUTION_NAME)
except PackageNotFoundError:
    # Source checkout that was never installed
    __version__ = "0.0.0+local"

__all__ = ["DISTRIBUTION_NAME", "__version__"]
