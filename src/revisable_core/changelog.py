"""Append-only change log entries attached to revisions."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .database import unit_of_work
from .intervals import utcnow
from .models import RevisionChange, RevisionInfo

logger = logging.getLogger("revisable-core.changelog")


def log_change(
    db: Session,
    info: RevisionInfo,
    user_id: Optional[int],
    description: str,
    payload: str = "",
    change_date: Optional[datetime] = None,
) -> RevisionChange:
    """Record who changed a revision and how.

    Args:
        db: Database session
        info: The revision that changed
        user_id: User making the change
        description: Human-readable description of the change
        payload: Optional serialized detail (e.g. a JSON diff)
        change_date: When the change happened (defaults to now)

    Returns:
        The created RevisionChange
    """
    if not description:
        raise ValueError("A change description is required")

    with unit_of_work(db):
        change = RevisionChange(
            revision_info=info,
            user_id=user_id,
            description=description,
            payload=payload or "",
            change_date=change_date or utcnow(),
        )
        db.add(change)
        db.flush()

    logger.debug(f"Logged change {change.id} on revision {info.id} by user {user_id}")
    return change


def get_changes(db: Session, info: RevisionInfo) -> list[RevisionChange]:
    """All change entries of a revision, oldest first."""
    return (
        db.query(RevisionChange)
        .filter(RevisionChange.revision_info_id == info.id)
        .order_by(RevisionChange.change_date, RevisionChange.id)
        .all()
    )
