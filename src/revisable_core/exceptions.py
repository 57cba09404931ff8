"""Error types raised by revision lifecycle and retroactive change operations."""
from typing import Optional


class RevisionError(Exception):
    """Base class for all revisable-core errors."""

    def __init__(
        self,
        message: str,
        revision_info_id: Optional[int] = None,
        revision_set_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.revision_info_id = revision_info_id
        self.revision_set_id = revision_set_id


class InvariantViolation(RevisionError):
    """Raised when a save would break a revision or revision set invariant.

    Examples: a second PRIMARY_DRAFT or LATEST_RELEASE in one set, an
    expired_at without a released_at, or expired_at earlier than released_at.
    """


class MissingPrerequisite(RevisionError):
    """Raised when an operation needs data or registration that does not exist."""


class NotificationDeliveryFailure(RevisionError):
    """Raised by a notifier when post-commit event delivery fails.

    The committed timeline mutation is never undone because of this error.
    """

    def __init__(
        self,
        message: str,
        event_name: str,
        revision_set_id: Optional[int] = None,
        failures: Optional[list[Exception]] = None,
    ):
        super().__init__(message, revision_set_id=revision_set_id)
        self.event_name = event_name
        self.failures = failures or []
