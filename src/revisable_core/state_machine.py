"""State machine validation for revision status transitions.

Enforces the revision lifecycle:
- Drafts are released once (PRIMARY_DRAFT → LATEST_RELEASE)
- A new release expires the previous one (LATEST_RELEASE → EXPIRED)
- Rollback reverses the last release (LATEST_RELEASE → PRIMARY_DRAFT, EXPIRED → LATEST_RELEASE)
- Retroactive changes deprecate releases and release deprecating drafts
- Any revision can be copied into a temporary or deprecating draft
"""
import enum
import logging
from typing import Optional

from .exceptions import RevisionError
from .models import RevisionInfo, RevisionStatus

logger = logging.getLogger("revisable-core.state_machine")


class RevisionOperation(str, enum.Enum):
    """Operations that are only legal from specific statuses."""

    RELEASE = "release"
    ROLLBACK = "rollback"
    OVERWRITE_PRIMARY_DRAFT = "overwrite_primary_draft"
    DEPRECATE = "deprecate"
    UPDATE_DEPRECATING_DRAFT_RANGE = "update_deprecating_draft_datetime_range"
    AFFECTED_REVISIONS = "affected_revisions"
    APPLY_DEPRECATING_CHANGE = "apply_deprecating_change"


class IllegalStateTransition(RevisionError):
    """Raised when an operation or transition is not allowed from the current status."""

    def __init__(
        self,
        message: str,
        current_status: RevisionStatus,
        requested: "RevisionStatus | RevisionOperation",
        allowed: list[RevisionStatus],
        revision_info_id: Optional[int] = None,
        revision_set_id: Optional[int] = None,
    ):
        super().__init__(message, revision_info_id=revision_info_id, revision_set_id=revision_set_id)
        self.current_status = current_status
        self.requested = requested
        self.allowed = allowed


# State machine transition matrix
# Maps current status → list of allowed next statuses
TRANSITION_MATRIX: dict[RevisionStatus, list[RevisionStatus]] = {
    RevisionStatus.PRIMARY_DRAFT: [
        RevisionStatus.PRIMARY_DRAFT,      # No-op (allowed)
        RevisionStatus.LATEST_RELEASE,     # Forward: release
        RevisionStatus.TEMPORARY_DRAFT,    # Copy target
        RevisionStatus.DEPRECATING_DRAFT,  # Copy target
    ],
    RevisionStatus.TEMPORARY_DRAFT: [
        RevisionStatus.TEMPORARY_DRAFT,    # No-op (allowed)
        RevisionStatus.PRIMARY_DRAFT,      # Overwrite primary draft
        RevisionStatus.DEPRECATING_DRAFT,
    ],
    RevisionStatus.LATEST_RELEASE: [
        RevisionStatus.LATEST_RELEASE,     # No-op (allowed)
        RevisionStatus.EXPIRED,            # Superseded by the next release
        RevisionStatus.PRIMARY_DRAFT,      # Back: rollback
        RevisionStatus.DEPRECATED,         # Retroactive change
        RevisionStatus.TEMPORARY_DRAFT,
        RevisionStatus.DEPRECATING_DRAFT,
    ],
    RevisionStatus.EXPIRED: [
        RevisionStatus.EXPIRED,            # No-op (allowed)
        RevisionStatus.LATEST_RELEASE,     # Back: restored by rollback
        RevisionStatus.DEPRECATED,         # Retroactive change
        RevisionStatus.TEMPORARY_DRAFT,
        RevisionStatus.DEPRECATING_DRAFT,
    ],
    RevisionStatus.DEPRECATING_DRAFT: [
        RevisionStatus.DEPRECATING_DRAFT,  # No-op (allowed)
        RevisionStatus.EXPIRED,            # Applied with an end
        RevisionStatus.LATEST_RELEASE,     # Applied open-ended
        RevisionStatus.TEMPORARY_DRAFT,
    ],
    RevisionStatus.DEPRECATED: [
        RevisionStatus.DEPRECATED,         # No-op (allowed)
        RevisionStatus.TEMPORARY_DRAFT,
        RevisionStatus.DEPRECATING_DRAFT,
        # Note: DEPRECATED is otherwise terminal; history is replaced, never revived
    ],
    RevisionStatus.DELETED: [
        RevisionStatus.DELETED,            # No-op (allowed)
        RevisionStatus.TEMPORARY_DRAFT,
        RevisionStatus.DEPRECATING_DRAFT,
    ],
}


# Operation → statuses the revision must be in
OPERATION_PRECONDITIONS: dict[RevisionOperation, list[RevisionStatus]] = {
    RevisionOperation.RELEASE: [RevisionStatus.PRIMARY_DRAFT],
    RevisionOperation.ROLLBACK: [RevisionStatus.LATEST_RELEASE],
    RevisionOperation.OVERWRITE_PRIMARY_DRAFT: [RevisionStatus.TEMPORARY_DRAFT],
    RevisionOperation.DEPRECATE: [RevisionStatus.LATEST_RELEASE, RevisionStatus.EXPIRED],
    RevisionOperation.UPDATE_DEPRECATING_DRAFT_RANGE: [RevisionStatus.DEPRECATING_DRAFT],
    RevisionOperation.AFFECTED_REVISIONS: [RevisionStatus.DEPRECATING_DRAFT],
    RevisionOperation.APPLY_DEPRECATING_CHANGE: [RevisionStatus.DEPRECATING_DRAFT],
}


# Guidance appended to blocked operation messages
_OPERATION_HINTS: dict[RevisionOperation, str] = {
    RevisionOperation.RELEASE: " Only the primary draft can be released.",
    RevisionOperation.ROLLBACK: " Only the latest release can be rolled back.",
    RevisionOperation.OVERWRITE_PRIMARY_DRAFT: " Only a temporary draft can overwrite the primary draft.",
    RevisionOperation.DEPRECATE: " Only released revisions can be deprecated.",
    RevisionOperation.UPDATE_DEPRECATING_DRAFT_RANGE: " Only a deprecating draft can be set with a datetime range.",
    RevisionOperation.AFFECTED_REVISIONS: " Affected revisions apply only to a deprecating draft.",
    RevisionOperation.APPLY_DEPRECATING_CHANGE: " Create a deprecating draft first.",
}


def is_transition_valid(current_status: RevisionStatus, new_status: RevisionStatus) -> bool:
    """
    Check if a status transition is valid.

    Args:
        current_status: Current revision status
        new_status: Requested new revision status

    Returns:
        True if transition is allowed, False otherwise
    """
    return new_status in TRANSITION_MATRIX.get(current_status, [])


def validate_transition(
    current_status: RevisionStatus,
    new_status: RevisionStatus,
    revision_info_id: Optional[int] = None,
) -> None:
    """
    Validate a status transition and raise exception if invalid.

    Raises:
        IllegalStateTransition: If the transition is not allowed
    """
    if current_status == new_status:
        logger.debug(f"No-op transition: {current_status.value} → {new_status.value}")
        return

    if not is_transition_valid(current_status, new_status):
        allowed = get_allowed_transitions(current_status)
        error_msg = (
            f"Invalid revision status transition: {current_status.value} → {new_status.value}. "
            f"From {current_status.value}, you can only transition to: "
            f"{', '.join(s.value for s in allowed)}."
        )
        logger.warning(f"Blocked transition: {error_msg}")
        raise IllegalStateTransition(
            message=error_msg,
            current_status=current_status,
            requested=new_status,
            allowed=allowed,
            revision_info_id=revision_info_id,
        )

    logger.debug(f"Valid transition: {current_status.value} → {new_status.value}")


def get_allowed_transitions(current_status: RevisionStatus) -> list[RevisionStatus]:
    """List of allowed next statuses (excluding the no-op same status)."""
    return [s for s in TRANSITION_MATRIX.get(current_status, []) if s != current_status]


def can_perform(info: RevisionInfo, operation: RevisionOperation) -> bool:
    return info.status in OPERATION_PRECONDITIONS[operation]


def validate_operation(info: RevisionInfo, operation: RevisionOperation) -> None:
    """
    Validate that an operation may be invoked on a revision in its current status.

    Always called before any mutation, so a rejection leaves no partial effect.

    Raises:
        IllegalStateTransition: If the revision is not in a required status
    """
    if can_perform(info, operation):
        return

    required = OPERATION_PRECONDITIONS[operation]
    error_msg = (
        f"Cannot {operation.value} revision {info.id} in status {info.status.value}. "
        f"Requires: {', '.join(s.value for s in required)}."
        f"{_OPERATION_HINTS.get(operation, '')}"
    )
    logger.warning(f"Blocked operation: {error_msg}")
    raise IllegalStateTransition(
        message=error_msg,
        current_status=info.status,
        requested=operation,
        allowed=required,
        revision_info_id=info.id,
        revision_set_id=info.revision_set_id,
    )


def transition(info: RevisionInfo, new_status: RevisionStatus) -> RevisionInfo:
    """Validate then apply a bare status change (no timestamps)."""
    validate_transition(info.status, new_status, revision_info_id=info.id)
    info.status = new_status
    return info
