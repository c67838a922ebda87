"""Exception hierarchy for the sync engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base sync error."""


class FatalSyncError(SyncError):
    """Aborts the whole pass; the process exits non-zero."""


class InboxNotFoundError(FatalSyncError):
    """No usable inbox for the configured account."""


class DestinationUserNotFoundError(FatalSyncError):
    """The destination API token does not map to a Chatwoot user."""


class ReconciliationError(SyncError):
    """The bulk contact/conversation statement failed for a chat batch."""


class SourceAPIError(SyncError):
    """Raised when a UAZAPI request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"UAZAPI request failed ({status_code}): {message}")
