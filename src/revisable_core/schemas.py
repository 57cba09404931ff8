"""Pydantic schemas for revision read models, results and events."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from .intervals import OverlapCase
from .models import RevisionStatus


# Revision Schemas

class RevisionInfoResponse(BaseModel):
    """Schema for revision metadata."""

    id: int
    status: RevisionStatus
    released_at: Optional[datetime] = None
    released_by: Optional[int] = None
    expired_at: Optional[datetime] = None
    deprecated_at: Optional[datetime] = None
    revision_set_id: int
    revision_type: str
    revision_id: int

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RevisionSetResponse(BaseModel):
    """Schema for a revision set with all its revisions."""

    id: int
    entity_type: str
    created_at: datetime
    revision_infos: list[RevisionInfoResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RevisionChangeResponse(BaseModel):
    """Schema for a change-log entry."""

    id: int
    revision_info_id: int
    user_id: Optional[int] = None
    description: str
    payload: str = ""
    change_date: datetime

    model_config = ConfigDict(from_attributes=True)


# Retroactive Change Schemas

class OverlapResolution(BaseModel):
    """How one affected release was reshaped by a retroactive change."""

    revision_id: int = Field(..., description="The affected (now deprecated) release")
    case: OverlapCase
    before_revision_id: Optional[int] = Field(None, description="Split covering [R.released_at, D.released_at)")
    after_revision_id: Optional[int] = Field(None, description="Split covering [D.expired_at, R.expired_at)")

    model_config = ConfigDict(use_enum_values=True)

    @property
    def created_revision_ids(self) -> list[int]:
        return [i for i in (self.before_revision_id, self.after_revision_id) if i is not None]


class RetroactiveChangeResult(BaseModel):
    """Outcome of applying a deprecating draft.

    affected_revision_ids lists every revision touched: the deprecated
    originals, the deprecating revision itself and the new splits, so
    callers can reconcile caches without relying on the notifier.
    """

    entity_type: str
    revision_set_id: int
    deprecating_revision_id: int
    affected_revision_ids: list[int] = Field(default_factory=list)
    resolutions: list[OverlapResolution] = Field(default_factory=list)
    primary_draft_overwritten: bool = False
    notification_delivered: bool = False
    notification_error: Optional[str] = None


class RetroactiveChangeEvent(BaseModel):
    """Payload delivered to retroactive change listeners."""

    event: str
    entity_type: str
    revision_set_id: int
    affected_revision_ids: list[int] = Field(default_factory=list)
