"""Data models for provider session status."""

from dataclasses import dataclass

WORKING_STATUS = "WORKING"
FAILED_STATUS = "FAILED"


@dataclass(frozen=True)
class SessionStatus:
    """Connection state of the provider session."""

    name: str
    status: str
    me_id: str | None = None
    me_name: str | None = None

    @property
    def is_working(self) -> bool:
        return self.status.upper() == WORKING_STATUS
