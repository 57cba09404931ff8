"""Revision set queries, draft materialization and revision persistence.

Every status-filtered view reads from the database, so callers flush
pending changes before querying (sessions run with autoflush disabled).
"""
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .database import unit_of_work
from .exceptions import InvariantViolation, MissingPrerequisite
from .models import RevisionInfo, RevisionSet, RevisionStatus, UNIQUE_PER_SET_STATUSES
from .registry import get_revisable_type, revisable_type_for
from .state_machine import transition

logger = logging.getLogger("revisable-core.revision_sets")


# =============================================================================
# Revision set creation and locking
# =============================================================================


def get_or_create_revision_set(db: Session, info: RevisionInfo) -> RevisionSet:
    """
    Return the revision set of a revision, creating and flushing it if absent.

    Raises:
        MissingPrerequisite: If the revision's type is not registered
    """
    if info.revision_set is not None:
        return info.revision_set

    revisable_type = get_revisable_type(info.revision_type)
    revision_set = RevisionSet(entity_type=revisable_type.entity_type)
    db.add(revision_set)
    db.flush()  # Persist the set before any revision references it

    info.revision_set = revision_set
    logger.debug(f"Created revision set {revision_set.id} for {revisable_type.entity_type}")
    return revision_set


def get_revision_set(db: Session, revision_set_id: int) -> Optional[RevisionSet]:
    return db.get(RevisionSet, revision_set_id)


def lock_revision_set(db: Session, revision_set: RevisionSet) -> RevisionSet:
    """Take a row lock on the set for the rest of the transaction.

    Serializes status-mutating transactions on one set. SQLite ignores
    FOR UPDATE; its database-level write lock gives the same effect.
    """
    if revision_set.id is None:
        return revision_set
    return (
        db.query(RevisionSet)
        .filter(RevisionSet.id == revision_set.id)
        .with_for_update()
        .one()
    )


# =============================================================================
# Status-filtered views
# =============================================================================


def _revisions_by_status(db: Session, revision_set: RevisionSet, statuses: Sequence[RevisionStatus]):
    return db.query(RevisionInfo).filter(
        RevisionInfo.revision_set_id == revision_set.id,
        RevisionInfo.status.in_(list(statuses)),
    )


def find_primary_draft(db: Session, revision_set: RevisionSet) -> Optional[RevisionInfo]:
    """The PRIMARY_DRAFT entry, without materializing one."""
    return _revisions_by_status(db, revision_set, [RevisionStatus.PRIMARY_DRAFT]).first()


def primary_draft(db: Session, revision_set: RevisionSet) -> RevisionInfo:
    """
    Return the primary draft, materializing it from the latest release if needed.

    Raises:
        MissingPrerequisite: If the set has neither a primary draft nor a latest release
    """
    draft = find_primary_draft(db, revision_set)
    if draft is not None:
        return draft

    release_to_clone = latest_release(db, revision_set)
    if release_to_clone is None:
        logger.warning(f"Revision set {revision_set.id} has no primary draft or latest release")
        raise MissingPrerequisite(
            "No primary draft or latest release in the revision set",
            revision_set_id=revision_set.id,
        )

    with unit_of_work(db):
        lock_revision_set(db, revision_set)
        draft = duplicate_revision(db, release_to_clone, RevisionStatus.PRIMARY_DRAFT)

    logger.info(f"Materialized primary draft {draft.id} from release {release_to_clone.id}")
    return draft


def temporary_drafts(db: Session, revision_set: RevisionSet) -> list[RevisionInfo]:
    return (
        _revisions_by_status(db, revision_set, [RevisionStatus.TEMPORARY_DRAFT])
        .order_by(RevisionInfo.id)
        .all()
    )


def deprecating_drafts(db: Session, revision_set: RevisionSet) -> list[RevisionInfo]:
    return (
        _revisions_by_status(db, revision_set, [RevisionStatus.DEPRECATING_DRAFT])
        .order_by(RevisionInfo.id)
        .all()
    )


def latest_release(db: Session, revision_set: RevisionSet) -> Optional[RevisionInfo]:
    """The revision that was released last, if any."""
    return _revisions_by_status(db, revision_set, [RevisionStatus.LATEST_RELEASE]).first()


def releases(db: Session, revision_set: RevisionSet) -> list[RevisionInfo]:
    """All released revisions (LATEST_RELEASE and EXPIRED), oldest first."""
    return (
        _revisions_by_status(db, revision_set, models.RELEASED_STATUSES)
        .order_by(RevisionInfo.released_at, RevisionInfo.id)
        .all()
    )


def expired_releases(db: Session, revision_set: RevisionSet) -> list[RevisionInfo]:
    return (
        _revisions_by_status(db, revision_set, [RevisionStatus.EXPIRED])
        .order_by(RevisionInfo.expired_at, RevisionInfo.id)
        .all()
    )


def revisions_between(
    db: Session,
    revision_set: RevisionSet,
    start: datetime,
    end: datetime,
) -> list[RevisionInfo]:
    """
    Released revisions whose validity interval intersects [start, end].

    A revision matches when ``released_at <= end`` and it expires after
    ``start`` (or never). A revision expiring exactly at ``start`` is
    excluded, matching the right-open validity convention.

    Ordered by released_at, then id for identical boundaries.
    """
    return (
        _revisions_by_status(db, revision_set, models.RELEASED_STATUSES)
        .filter(
            RevisionInfo.released_at <= end,
            or_(RevisionInfo.expired_at > start, RevisionInfo.expired_at.is_(None)),
        )
        .order_by(RevisionInfo.released_at, RevisionInfo.id)
        .all()
    )


def revision_at(db: Session, revision_set: RevisionSet, instant: datetime) -> Optional[RevisionInfo]:
    """The release that was in effect at the given instant."""
    matches = revisions_between(db, revision_set, instant, instant)
    return matches[0] if matches else None


# =============================================================================
# Persistence helpers
# =============================================================================


def ensure_unique_status(db: Session, info: RevisionInfo) -> None:
    """
    Reject a save that would create a second PRIMARY_DRAFT or LATEST_RELEASE.

    Raises:
        InvariantViolation: If another revision in the set already has the status
    """
    if info.status not in UNIQUE_PER_SET_STATUSES:
        return

    revision_set_id = info.revision_set.id if info.revision_set is not None else info.revision_set_id
    query = db.query(RevisionInfo.id).filter(
        RevisionInfo.revision_set_id == revision_set_id,
        RevisionInfo.status == info.status,
    )
    if info.id is not None:
        query = query.filter(RevisionInfo.id != info.id)

    conflict = query.first()
    if conflict is not None:
        logger.warning(
            f"Uniqueness violation: revision {conflict.id} is already {info.status.value} "
            f"in revision set {revision_set_id}"
        )
        raise InvariantViolation(
            f"{info.status.value} is only allowed once per revision set",
            revision_info_id=info.id,
            revision_set_id=revision_set_id,
        )


def save_revision_info(db: Session, info: RevisionInfo) -> RevisionInfo:
    """
    Validate and flush a revision's metadata.

    Raises:
        InvariantViolation: On inconsistent validity fields or a duplicate unique status
    """
    info.check_invariants()
    ensure_unique_status(db, info)
    db.add(info)
    try:
        db.flush()
    except IntegrityError as e:
        logger.warning(f"Integrity error saving revision {info.id}: {e}")
        raise InvariantViolation(
            f"Saving revision as {info.status.value} violates a revision set constraint",
            revision_info_id=info.id,
            revision_set_id=info.revision_set_id,
        ) from e
    return info


def get_payload(db: Session, info: RevisionInfo) -> Any:
    """
    Resolve the host payload referenced by a revision.

    Raises:
        MissingPrerequisite: If the type is unregistered or the row is gone
    """
    revisable_type = get_revisable_type(info.revision_type)
    payload = db.get(revisable_type.entity_cls, info.revision_id)
    if payload is None:
        raise MissingPrerequisite(
            f"{info.revision_type} #{info.revision_id} referenced by revision {info.id} does not exist",
            revision_info_id=info.id,
            revision_set_id=info.revision_set_id,
        )
    return payload


def get_revision_info(db: Session, payload: Any) -> Optional[RevisionInfo]:
    """The revision metadata attached to a host payload, if any."""
    revisable_type = revisable_type_for(payload)
    return (
        db.query(RevisionInfo)
        .filter(
            RevisionInfo.revision_type == revisable_type.entity_type,
            RevisionInfo.revision_id == payload.id,
        )
        .one_or_none()
    )


def duplicate_payload_of(db: Session, info: RevisionInfo) -> Any:
    """Persist a copy of a revision's payload using the registered duplicator."""
    revisable_type = get_revisable_type(info.revision_type)
    payload = revisable_type.duplicate(get_payload(db, info))
    db.add(payload)
    db.flush()  # Get the payload ID
    return payload


def duplicate_revision(
    db: Session,
    info: RevisionInfo,
    status: RevisionStatus = RevisionStatus.PRIMARY_DRAFT,
) -> RevisionInfo:
    """
    Duplicate a revision's payload and metadata into the same set.

    The copy starts from draft defaults and is moved to ``status``.
    Runs inside the caller's transaction; flushes but never commits.
    """
    payload = duplicate_payload_of(db, info)

    new_info = info.clone(revision_id=payload.id)
    transition(new_info, status)
    save_revision_info(db, new_info)

    logger.debug(
        f"Duplicated revision {info.id} into {new_info.id} "
        f"(status={status.value}) in revision set {new_info.revision_set_id}"
    )
    return new_info


def destroy_revision(db: Session, info: RevisionInfo) -> None:
    """Delete a revision's payload and metadata. Flushes but never commits."""
    revisable_type = get_revisable_type(info.revision_type)
    payload = db.get(revisable_type.entity_cls, info.revision_id)
    if payload is not None:
        db.delete(payload)

    revision_set = info.revision_set
    if revision_set is not None and info in revision_set.revision_infos:
        revision_set.revision_infos.remove(info)
    db.delete(info)
    db.flush()
    logger.debug(f"Destroyed revision {info.id} ({info.revision_type} #{info.revision_id})")


def destroy_revision_set(db: Session, revision_set: RevisionSet) -> None:
    """Delete a revision set, all its revisions and their payloads."""
    revision_set_id = revision_set.id
    with unit_of_work(db):
        lock_revision_set(db, revision_set)
        for info in list(revision_set.revision_infos):
            revisable_type = get_revisable_type(info.revision_type)
            payload = db.get(revisable_type.entity_cls, info.revision_id)
            if payload is not None:
                db.delete(payload)
        db.delete(revision_set)
        db.flush()
    logger.info(f"Destroyed revision set {revision_set_id}")
