"""
Error taxonomy for medreminder.

Everything raised by this package derives from MedReminderError so callers
can present a single "something went wrong" path, while the sync layer and
the action handler branch on the concrete types below.
"""


class MedReminderError(Exception):
    """Base class for all medreminder errors."""

    # Whether the sync layer may spend another attempt on this error
    retryable = True


class ConnectivityError(MedReminderError):
    """No network at attempt time. Counts toward the retry budget."""

    def __init__(self, message: str = "No network connection"):
        super().__init__(message)


class RemoteOperationError(MedReminderError):
    """The remote store rejected a call. Carries the underlying cause."""

    def __init__(self, message: str, cause: Exception = None, status_code: int = None):
        super().__init__(message)
        self.cause = cause
        self.status_code = status_code

    def __str__(self):
        base = super().__str__()
        if self.status_code is not None:
            base = f"{base} (HTTP {self.status_code})"
        if self.cause is not None:
            base = f"{base}: {self.cause}"
        return base


class ConflictError(RemoteOperationError):
    """A duplicate adherence log for an occurrence that is already resolved."""

    retryable = False


class MaxRetriesExceededError(MedReminderError):
    """Every attempt failed without producing a concrete error."""

    def __init__(self, message: str = "Maximum retry attempts reached"):
        super().__init__(message)


class SchedulingError(MedReminderError):
    """The notification platform refused to schedule or cancel."""


class MalformedDataError(MedReminderError, ValueError):
    """An unparseable time label, unknown status value or broken payload."""

    retryable = False


class SubscriptionError(MedReminderError):
    """A realtime subscription could not be established."""


class ConfigurationError(MedReminderError):
    """Remote store settings are missing or invalid."""


class InvitationNotFoundError(MedReminderError):
    """No pending care-link matches the invite code."""


class InvitationExpiredError(MedReminderError):
    """The care-link invitation is past its expiry instant."""
