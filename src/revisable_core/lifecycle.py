"""Revision lifecycle operations: create, draft, release, overwrite, rollback.

Implements immutable release history where publishing a draft creates a new
release and a fresh primary draft. Each revision has its own status and a
revision set holds at most one PRIMARY_DRAFT and one LATEST_RELEASE.

Key concepts:
- The primary draft is the current edit target; release() publishes it
- release() expires the previous LATEST_RELEASE at the same instant
- rollback() undoes the last release and restores the previous one
- Temporary drafts are staged edits that can replace the primary draft

Every multi-step operation runs in one unit of work: either all steps are
committed or none are.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from .database import unit_of_work
from .intervals import utcnow
from .models import RevisionInfo, RevisionStatus
from .registry import get_revisable_type, revisable_type_for
from .revision_sets import (
    destroy_revision,
    duplicate_revision,
    expired_releases,
    find_primary_draft,
    get_or_create_revision_set,
    latest_release,
    lock_revision_set,
    save_revision_info,
)
from .state_machine import (
    RevisionOperation,
    transition,
    validate_operation,
    validate_transition,
)

logger = logging.getLogger("revisable-core.lifecycle")


def create_revision(db: Session, payload: Any, entity_type: Optional[str] = None) -> RevisionInfo:
    """Persist a new host payload as the primary draft of a new revision set.

    Args:
        db: Database session
        payload: Unsaved host entity instance of a registered type
        entity_type: Registered tag (defaults to the tag of the payload's class)

    Returns:
        The created RevisionInfo (status PRIMARY_DRAFT)

    Raises:
        MissingPrerequisite: If the payload type is not registered
    """
    revisable_type = get_revisable_type(entity_type) if entity_type else revisable_type_for(payload)

    with unit_of_work(db):
        db.add(payload)
        db.flush()  # Get the payload ID

        info = RevisionInfo(
            revision_type=revisable_type.entity_type,
            revision_id=payload.id,
        )
        get_or_create_revision_set(db, info)
        save_revision_info(db, info)

    logger.info(
        f"Created {revisable_type.entity_type} #{info.revision_id} as primary draft "
        f"{info.id} in revision set {info.revision_set_id}"
    )
    return info


def create_duplicated_revision(
    db: Session,
    info: RevisionInfo,
    status: RevisionStatus = RevisionStatus.PRIMARY_DRAFT,
) -> RevisionInfo:
    """Duplicate a revision (payload and metadata) into its set with the given status."""
    with unit_of_work(db):
        lock_revision_set(db, info.revision_set)
        new_info = duplicate_revision(db, info, status)
    return new_info


def create_temporary_draft(db: Session, info: RevisionInfo) -> RevisionInfo:
    """Create a staged copy of a revision that can later overwrite the primary draft."""
    return create_duplicated_revision(db, info, RevisionStatus.TEMPORARY_DRAFT)


def release(
    db: Session,
    info: RevisionInfo,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> RevisionInfo:
    """Publish the primary draft.

    This function:
    1. Expires the current LATEST_RELEASE (if any) at the release instant
    2. Marks the draft as LATEST_RELEASE, released at that instant by user_id
    3. Clones the released revision into a new PRIMARY_DRAFT

    Args:
        db: Database session
        info: The primary draft to release
        user_id: Actor releasing the revision
        now: Release instant (defaults to the current UTC time)

    Returns:
        The new primary draft

    Raises:
        IllegalStateTransition: If the revision is not the primary draft
    """
    validate_operation(info, RevisionOperation.RELEASE)
    replace_time = now or utcnow()

    with unit_of_work(db):
        revision_set = lock_revision_set(db, info.revision_set)

        revision_to_expire = latest_release(db, revision_set)
        if revision_to_expire is not None:
            validate_transition(revision_to_expire.status, RevisionStatus.EXPIRED, revision_to_expire.id)
            revision_to_expire.set_as_expired(replace_time)
            save_revision_info(db, revision_to_expire)

        validate_transition(info.status, RevisionStatus.LATEST_RELEASE, info.id)
        info.set_as_latest_release(user_id, replace_time)
        save_revision_info(db, info)

        new_draft = duplicate_revision(db, info, RevisionStatus.PRIMARY_DRAFT)

    logger.info(
        f"Released revision {info.id} in revision set {info.revision_set_id} "
        f"at {replace_time.isoformat()}"
        f"{f' (expired {revision_to_expire.id})' if revision_to_expire is not None else ''}"
        f", new primary draft {new_draft.id}"
    )
    return new_draft


def overwrite_primary_draft(db: Session, info: RevisionInfo) -> RevisionInfo:
    """Replace the primary draft with a temporary draft.

    The current primary draft (payload and metadata) is destroyed.

    Raises:
        IllegalStateTransition: If the revision is not a temporary draft
    """
    validate_operation(info, RevisionOperation.OVERWRITE_PRIMARY_DRAFT)

    with unit_of_work(db):
        revision_set = lock_revision_set(db, info.revision_set)

        current = find_primary_draft(db, revision_set)
        if current is not None:
            destroy_revision(db, current)

        transition(info, RevisionStatus.PRIMARY_DRAFT)
        save_revision_info(db, info)

    logger.info(f"Temporary draft {info.id} overwrote the primary draft of revision set {info.revision_set_id}")
    return info


def rollback(db: Session, info: RevisionInfo) -> Optional[RevisionInfo]:
    """Roll the latest release back to being the primary draft.

    The primary draft is destroyed, the latest release becomes the primary
    draft with its release metadata cleared, and the expired release with
    the latest expired_at is restored as LATEST_RELEASE with its original
    release metadata.

    Returns:
        The restored release, or None if there was no expired release

    Raises:
        IllegalStateTransition: If the revision is not the latest release
    """
    validate_operation(info, RevisionOperation.ROLLBACK)

    with unit_of_work(db):
        revision_set = lock_revision_set(db, info.revision_set)

        draft = find_primary_draft(db, revision_set)
        if draft is not None:
            destroy_revision(db, draft)

        transition(info, RevisionStatus.PRIMARY_DRAFT)
        info.released_at = None
        info.released_by = None
        save_revision_info(db, info)

        restored = None
        expired = expired_releases(db, revision_set)
        if expired:
            restored = expired[-1]
            validate_transition(restored.status, RevisionStatus.LATEST_RELEASE, restored.id)
            restored.set_as_latest_release(set_metadata=False)
            save_revision_info(db, restored)

    logger.info(
        f"Rolled back revision {info.id} in revision set {info.revision_set_id}"
        f"{f', restored release {restored.id}' if restored is not None else ''}"
    )
    return restored


def destroy(db: Session, info: RevisionInfo) -> None:
    """Delete a revision and its payload."""
    with unit_of_work(db):
        lock_revision_set(db, info.revision_set)
        destroy_revision(db, info)
