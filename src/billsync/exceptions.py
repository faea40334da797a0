# ABOUTME: Custom exception hierarchy for billsync
# ABOUTME: Provides structured error handling for remote ledger sync operations


class BillSyncError(Exception):
    """Base exception for all billsync errors."""


class NotConnectedError(BillSyncError):
    """User has no remote ledger credential."""


class RemoteLedgerError(BillSyncError):
    """Failure reported by (or on the way to) the remote ledger."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        payload: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class UnauthenticatedError(RemoteLedgerError):
    """Access token rejected, refresh may help."""


class ForbiddenError(RemoteLedgerError):
    """Token is valid but lacks access to the resource."""


class RateLimitedError(RemoteLedgerError):
    """Too many requests to the remote ledger."""


class UpstreamUnavailableError(RemoteLedgerError):
    """Remote resource missing or the service could not be reached."""


class UpstreamError(RemoteLedgerError):
    """Any other remote ledger failure."""


class MissingRemoteLinkError(BillSyncError):
    """One or more participants have no linked remote identity."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "Members not linked to the remote ledger: " + ", ".join(missing)
        )
        self.missing = missing


class InvalidAmountError(BillSyncError):
    """Bill total is zero or negative."""


class NotLinkedError(BillSyncError):
    """Household is not linked to a remote group."""


class ConflictDetectedError(BillSyncError):
    """Local and remote copies both changed since the last sync."""


class SyncInProgressError(BillSyncError):
    """Another sync for the same household is running."""


class StaleWriteError(BillSyncError):
    """Record changed in storage since it was loaded."""


class NotFoundError(BillSyncError):
    """Referenced user, household, or bill doesn't exist."""


class ValidationError(BillSyncError):
    """Invalid input provided to a bill mutation or tool."""
