"""Retroactive change engine for deprecatable revisions.

A deprecating draft is a copy of a revision carrying an explicit historical
validity interval. Applying it reshapes the release timeline so that at most
one release is authoritative for any instant:

1. Every release whose interval intersects the draft's interval is
   classified (see intervals.classify_overlap) and deprecated
2. The parts of an affected release left uncovered by the draft survive
   as new split releases (a "before" and/or an "after" revision)
3. The deprecation graph records which revisions replaced which
4. The draft itself becomes a release (EXPIRED when bounded, LATEST_RELEASE
   when ongoing) and an ongoing draft also overwrites the primary draft

All of it happens in one unit of work; listeners are notified after commit.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from .config import get_settings
from .database import unit_of_work
from .exceptions import InvariantViolation, NotificationDeliveryFailure
from .intervals import (
    TIMESTAMP_RESOLUTION,
    ValidityInterval,
    classify_overlap,
    split_intervals,
    utcnow,
)
from .lifecycle import overwrite_primary_draft
from .models import RevisionInfo, RevisionStatus
from .notifier import ChangeNotifier, get_default_notifier
from .registry import require_deprecatable
from .revision_sets import (
    duplicate_payload_of,
    duplicate_revision,
    get_payload,
    lock_revision_set,
    revisions_between,
    save_revision_info,
)
from .schemas import OverlapResolution, RetroactiveChangeResult
from .state_machine import (
    RevisionOperation,
    transition,
    validate_operation,
    validate_transition,
)

logger = logging.getLogger("revisable-core.deprecation")


# =============================================================================
# Deprecating drafts
# =============================================================================


def create_deprecating_draft(
    db: Session,
    info: RevisionInfo,
    now: Optional[datetime] = None,
) -> RevisionInfo:
    """Create a deprecating draft out of a revision.

    The draft copies the source's validity interval; a source that was never
    released yields a draft starting now and open-ended.

    Raises:
        MissingPrerequisite: If the revision type is not deprecatable
    """
    require_deprecatable(info.revision_type)
    released_at = info.released_at or now or utcnow()
    expired_at = info.expired_at

    with unit_of_work(db):
        lock_revision_set(db, info.revision_set)
        draft = duplicate_revision(db, info, RevisionStatus.DEPRECATING_DRAFT)
        draft.released_at = released_at
        draft.expired_at = expired_at
        save_revision_info(db, draft)

    logger.info(f"Created deprecating draft {draft.id} from revision {info.id}")
    return draft


def update_deprecating_draft_datetime_range(
    db: Session,
    info: RevisionInfo,
    released_at: datetime,
    expired_at: Optional[datetime],
) -> RevisionInfo:
    """Set the interval a deprecating draft will cover once applied.

    Open-ended (expired_at=None) and future ranges are allowed.

    Raises:
        IllegalStateTransition: If the revision is not a deprecating draft
        InvariantViolation: If released_at is missing or after expired_at
    """
    require_deprecatable(info.revision_type)
    validate_operation(info, RevisionOperation.UPDATE_DEPRECATING_DRAFT_RANGE)

    if released_at is None:
        raise InvariantViolation(
            "Must set a released-at time for a deprecating draft",
            revision_info_id=info.id,
            revision_set_id=info.revision_set_id,
        )
    if expired_at is not None and expired_at < released_at:
        raise InvariantViolation(
            f"expired_at {expired_at} must come after released_at {released_at}",
            revision_info_id=info.id,
            revision_set_id=info.revision_set_id,
        )

    with unit_of_work(db):
        info.released_at = released_at
        info.expired_at = expired_at
        save_revision_info(db, info)

    logger.debug(f"Deprecating draft {info.id} now covers [{released_at}, {expired_at})")
    return info


def affected_revisions(
    db: Session,
    info: RevisionInfo,
    now: Optional[datetime] = None,
) -> list[RevisionInfo]:
    """Releases whose validity interval intersects the deprecating draft's.

    For example, with an expired release for January and a current release
    from February, moving the start of a February draft to mid-January
    affects both.

    The query's upper bound is lowered by one timestamp step so a release
    starting exactly where the draft ends is not affected.

    Raises:
        IllegalStateTransition: If the revision is not a deprecating draft
    """
    validate_operation(info, RevisionOperation.AFFECTED_REVISIONS)
    end = (info.expired_at or now or utcnow()) - TIMESTAMP_RESOLUTION
    return revisions_between(db, info.revision_set, info.released_at, end)


def apply_deprecating_change(
    db: Session,
    info: RevisionInfo,
    user_id: Optional[int],
    avoid_overwriting_primary_draft: bool = False,
    notifier: Optional[ChangeNotifier] = None,
    now: Optional[datetime] = None,
) -> RetroactiveChangeResult:
    """Apply a deprecating draft as a retroactive change.

    Args:
        db: Database session
        info: The deprecating draft
        user_id: Actor applying the change (recorded as released_by)
        avoid_overwriting_primary_draft: Never overwrite the primary draft, even for an ongoing change
        notifier: Receives the change after commit (defaults to the process-wide notifier)
        now: Instant used for deprecation timestamps (defaults to the current UTC time)

    Returns:
        The result listing every revision touched and the notification outcome

    Raises:
        MissingPrerequisite: If the revision type is not deprecatable
        IllegalStateTransition: If the revision is not a deprecating draft
        InvariantViolation: If the resulting timeline would break an invariant
    """
    revisable_type = require_deprecatable(info.revision_type)
    validate_operation(info, RevisionOperation.APPLY_DEPRECATING_CHANGE)
    if info.released_at is None:
        raise InvariantViolation(
            "A deprecating draft must have a released-at time",
            revision_info_id=info.id,
            revision_set_id=info.revision_set_id,
        )
    deprecation_time = now or utcnow()

    with unit_of_work(db):
        revision_set = lock_revision_set(db, info.revision_set)

        resolutions = _apply_affected_revisions(db, info, user_id, deprecation_time)
        _apply_as_released(db, info, user_id)

        primary_draft_overwritten = False
        if not avoid_overwriting_primary_draft and _should_overwrite_primary_draft(info):
            _overwrite_primary_draft_with(db, info)
            primary_draft_overwritten = True

        affected_ids = [resolution.revision_id for resolution in resolutions]
        affected_ids.append(info.id)
        for resolution in resolutions:
            affected_ids.extend(resolution.created_revision_ids)

        result = RetroactiveChangeResult(
            entity_type=revisable_type.entity_type,
            revision_set_id=revision_set.id,
            deprecating_revision_id=info.id,
            affected_revision_ids=affected_ids,
            resolutions=resolutions,
            primary_draft_overwritten=primary_draft_overwritten,
        )

    logger.info(
        f"Applied retroactive change {result.deprecating_revision_id} to revision set "
        f"{result.revision_set_id}: {len(resolutions)} release(s) deprecated, "
        f"affected {result.affected_revision_ids}"
    )
    _dispatch_notification(result, notifier)
    return result


# =============================================================================
# Deprecation graph accessors
# =============================================================================


def deprecator_of_revisions(db: Session, info: RevisionInfo) -> list[Any]:
    """Payloads of the revisions this one directly deprecated."""
    return _payloads(db, info.deprecator_of)


def deprecated_by_revisions(db: Session, info: RevisionInfo) -> list[Any]:
    """Payloads of the revisions that directly deprecated this one."""
    return _payloads(db, info.deprecated_by_revisions)


def deprecator_of_chain(db: Session, info: RevisionInfo) -> list[Any]:
    return _payloads(db, info.deprecator_of_chain())


def deprecated_by_revisions_chain(db: Session, info: RevisionInfo) -> list[Any]:
    return _payloads(db, info.deprecated_by_revisions_chain())


def deprecated_by(info: RevisionInfo) -> Optional[int]:
    """The actor who deprecated this revision, if it was deprecated."""
    deprecators = info.deprecated_by_revisions
    if not deprecators:
        return None
    return deprecators[0].released_by


def _payloads(db: Session, infos: list[RevisionInfo]) -> list[Any]:
    payloads = []
    for info in infos:
        payload = get_payload(db, info)
        if payload not in payloads:
            payloads.append(payload)
    return payloads


# =============================================================================
# Reconciliation steps
# =============================================================================


def _apply_affected_revisions(
    db: Session,
    info: RevisionInfo,
    user_id: Optional[int],
    deprecation_time: datetime,
) -> list[OverlapResolution]:
    deprecating_interval = info.validity_interval
    resolutions = []

    for revision in affected_revisions(db, info, now=deprecation_time):
        # Splits derive from the interval and status before deprecation
        original_status = revision.status
        original_interval = revision.validity_interval

        case = classify_overlap(deprecating_interval, original_interval)
        before_interval, after_interval = split_intervals(case, deprecating_interval, original_interval)

        _deprecate_revision(db, revision, deprecation_time)

        before = None
        if before_interval is not None:
            before = _create_split_revision(db, revision, before_interval, RevisionStatus.EXPIRED, user_id)
        after = None
        if after_interval is not None:
            after = _create_split_revision(db, revision, after_interval, original_status, user_id)

        deprecators = [info] + [split for split in (before, after) if split is not None]
        _link_deprecators(db, revision, deprecators)

        logger.debug(
            f"Revision {revision.id} {case.value} by {info.id}"
            f"{f', before split {before.id}' if before is not None else ''}"
            f"{f', after split {after.id}' if after is not None else ''}"
        )
        resolutions.append(OverlapResolution(
            revision_id=revision.id,
            case=case,
            before_revision_id=before.id if before is not None else None,
            after_revision_id=after.id if after is not None else None,
        ))

    return resolutions


def _deprecate_revision(db: Session, revision: RevisionInfo, deprecation_time: datetime) -> None:
    validate_operation(revision, RevisionOperation.DEPRECATE)
    validate_transition(revision.status, RevisionStatus.DEPRECATED, revision.id)
    revision.set_as_deprecated(deprecation_time)
    save_revision_info(db, revision)


def _create_split_revision(
    db: Session,
    revision: RevisionInfo,
    interval: ValidityInterval,
    status: RevisionStatus,
    user_id: Optional[int],
) -> RevisionInfo:
    """Copy of a deprecated release covering the part of it left uncovered."""
    payload = duplicate_payload_of(db, revision)

    # New row: the status is assigned, not transitioned into
    split = revision.clone(revision_id=payload.id)
    split.status = status
    split.released_at = interval.start
    split.expired_at = interval.end
    split.released_by = user_id
    save_revision_info(db, split)
    return split


def _link_deprecators(db: Session, revision: RevisionInfo, deprecators: list[RevisionInfo]) -> None:
    for deprecator in deprecators:
        if deprecator not in revision.deprecated_by_revisions:
            revision.deprecated_by_revisions.append(deprecator)
    db.flush()


def _apply_as_released(db: Session, info: RevisionInfo, user_id: Optional[int]) -> None:
    status = RevisionStatus.EXPIRED if info.expired_at is not None else RevisionStatus.LATEST_RELEASE
    transition(info, status)
    info.released_by = user_id
    save_revision_info(db, info)


def _should_overwrite_primary_draft(info: RevisionInfo) -> bool:
    # Only an ongoing change describes the present, which the primary draft edits
    return info.is_ongoing


def _overwrite_primary_draft_with(db: Session, info: RevisionInfo) -> None:
    temporary_draft = duplicate_revision(db, info, RevisionStatus.TEMPORARY_DRAFT)
    overwrite_primary_draft(db, temporary_draft)


def _dispatch_notification(result: RetroactiveChangeResult, notifier: Optional[ChangeNotifier]) -> None:
    if not get_settings().notifications_enabled:
        logger.debug(f"Notifications disabled, not announcing change to revision set {result.revision_set_id}")
        return

    notifier = notifier or get_default_notifier()
    try:
        notifier.notify(result.entity_type, result.revision_set_id, result.affected_revision_ids)
    except NotificationDeliveryFailure as e:
        # The timeline change is committed; report instead of undoing it
        logger.warning(f"Retroactive change to revision set {result.revision_set_id} committed but not delivered: {e}")
        result.notification_error = str(e)
        return
    except Exception as e:
        logger.warning(
            f"Notifier failed for committed change to revision set {result.revision_set_id}: "
            f"{type(e).__name__}: {e}",
            exc_info=True,
        )
        result.notification_error = f"{type(e).__name__}: {e}"
        return
    result.notification_delivered = True
