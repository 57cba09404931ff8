"""SQLAlchemy database models."""
from datetime import datetime
from typing import Optional
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    Index,
    Table,
    event,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .exceptions import InvariantViolation
from .intervals import ValidityInterval, utcnow

# Base class for all models
Base = declarative_base()


# Deprecation graph (self-referential many-to-many)
# A row (deprecator_id, deprecated_id) reads "deprecator_id deprecated deprecated_id"
revision_info_deprecations = Table(
    'revision_info_deprecations',
    Base.metadata,
    Column('deprecator_id', Integer, ForeignKey('revision_infos.id', ondelete='CASCADE'), primary_key=True, index=True),
    Column('deprecated_id', Integer, ForeignKey('revision_infos.id', ondelete='CASCADE'), primary_key=True, index=True),
)


class RevisionStatus(str, enum.Enum):
    """Lifecycle status of a single revision.

    Valid states:
    - PRIMARY_DRAFT: the current edit target, at most one per revision set
    - TEMPORARY_DRAFT: a staged alternate edit
    - LATEST_RELEASE: the current release, at most one per revision set
    - EXPIRED: a release superseded by a later one
    - DEPRECATED: a release replaced by a retroactive change
    - DEPRECATING_DRAFT: a draft that will retroactively replace history
    - DELETED: soft-deleted revision
    """

    PRIMARY_DRAFT = "PRIMARY_DRAFT"
    TEMPORARY_DRAFT = "TEMPORARY_DRAFT"
    LATEST_RELEASE = "LATEST_RELEASE"
    EXPIRED = "EXPIRED"
    DEPRECATED = "DEPRECATED"
    DEPRECATING_DRAFT = "DEPRECATING_DRAFT"
    DELETED = "DELETED"


# Statuses allowed at most once per revision set
UNIQUE_PER_SET_STATUSES = (RevisionStatus.PRIMARY_DRAFT, RevisionStatus.LATEST_RELEASE)

RELEASED_STATUSES = (RevisionStatus.LATEST_RELEASE, RevisionStatus.EXPIRED)


class RevisionSet(Base):
    """All revisions of one logical entity across its history."""

    __tablename__ = "revision_sets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    revision_infos = relationship(
        "RevisionInfo",
        back_populates="revision_set",
        cascade="all, delete-orphan",
        order_by="RevisionInfo.id",
    )

    def __repr__(self) -> str:
        return f"<RevisionSet {self.id} ({self.entity_type})>"


class RevisionInfo(Base):
    """
    Per-revision metadata: status, validity interval and deprecation links.

    The revision payload is the host entity row referenced by the
    (revision_type, revision_id) tag. It is owned by the host, not by
    this table; lifecycle operations save both together.
    """

    __tablename__ = "revision_infos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status = Column(
        Enum(RevisionStatus, values_callable=lambda x: [e.value for e in x], name="revisionstatus"),
        nullable=False,
        default=RevisionStatus.PRIMARY_DRAFT,
        index=True
    )

    # Validity interval [released_at, expired_at)
    released_at = Column(DateTime, nullable=True, index=True)
    released_by = Column(Integer, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    deprecated_at = Column(DateTime, nullable=True)

    revision_set_id = Column(
        Integer,
        ForeignKey("revision_sets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Tagged reference to the host payload
    revision_type = Column(String(255), nullable=False)
    revision_id = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    revision_set = relationship("RevisionSet", back_populates="revision_infos")
    revision_changes = relationship(
        "RevisionChange",
        back_populates="revision_info",
        cascade="all, delete-orphan",
        order_by="RevisionChange.change_date",
    )
    deprecator_of = relationship(
        "RevisionInfo",
        secondary=revision_info_deprecations,
        primaryjoin=lambda: RevisionInfo.id == revision_info_deprecations.c.deprecator_id,
        secondaryjoin=lambda: RevisionInfo.id == revision_info_deprecations.c.deprecated_id,
        back_populates="deprecated_by_revisions",
        order_by="RevisionInfo.id",
    )
    deprecated_by_revisions = relationship(
        "RevisionInfo",
        secondary=revision_info_deprecations,
        primaryjoin=lambda: RevisionInfo.id == revision_info_deprecations.c.deprecated_id,
        secondaryjoin=lambda: RevisionInfo.id == revision_info_deprecations.c.deprecator_id,
        back_populates="deprecator_of",
        order_by="RevisionInfo.id",
    )

    # Database backstop for the once-per-set statuses
    __table_args__ = (
        Index(
            "uq_revision_infos_primary_draft",
            "revision_set_id",
            unique=True,
            sqlite_where=text("status = 'PRIMARY_DRAFT'"),
            postgresql_where=text("status = 'PRIMARY_DRAFT'"),
        ),
        Index(
            "uq_revision_infos_latest_release",
            "revision_set_id",
            unique=True,
            sqlite_where=text("status = 'LATEST_RELEASE'"),
            postgresql_where=text("status = 'LATEST_RELEASE'"),
        ),
        Index("idx_revision_infos_revision", "revision_type", "revision_id"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", RevisionStatus.PRIMARY_DRAFT)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<RevisionInfo {self.id} {self.revision_type}#{self.revision_id} {self.status.value}>"

    # Status predicates

    @property
    def is_primary_draft(self) -> bool:
        return self.status == RevisionStatus.PRIMARY_DRAFT

    @property
    def is_temporary_draft(self) -> bool:
        return self.status == RevisionStatus.TEMPORARY_DRAFT

    @property
    def is_latest_release(self) -> bool:
        return self.status == RevisionStatus.LATEST_RELEASE

    @property
    def is_expired(self) -> bool:
        return self.status == RevisionStatus.EXPIRED

    @property
    def is_released(self) -> bool:
        return self.status in RELEASED_STATUSES

    @property
    def is_deprecated(self) -> bool:
        return self.status == RevisionStatus.DEPRECATED

    @property
    def is_deprecating_draft(self) -> bool:
        return self.status == RevisionStatus.DEPRECATING_DRAFT

    @property
    def is_ongoing(self) -> bool:
        return self.expired_at is None

    @property
    def validity_interval(self) -> Optional[ValidityInterval]:
        """The [released_at, expired_at) interval, or None before release."""
        if self.released_at is None:
            return None
        return ValidityInterval(self.released_at, self.expired_at)

    def release_time_range(self, now: Optional[datetime] = None) -> Optional[tuple[datetime, datetime]]:
        """Closed (released_at, expired_at or now) pair for released revisions."""
        if not self.is_released:
            return None
        return self.released_at, self.expired_at or now or utcnow()

    @property
    def earliest_release_date(self) -> Optional[datetime]:
        """Earliest released_at among the releases of this revision's set."""
        if self.revision_set is None:
            return None
        dates = [
            info.released_at
            for info in self.revision_set.revision_infos
            if info.is_released and info.released_at is not None
        ]
        return min(dates) if dates else None

    # Status setters (no persistence, callers flush)

    def set_as_primary_draft(self) -> "RevisionInfo":
        self.status = RevisionStatus.PRIMARY_DRAFT
        return self

    def set_as_temporary_draft(self) -> "RevisionInfo":
        self.status = RevisionStatus.TEMPORARY_DRAFT
        return self

    def set_as_deprecating_draft(self) -> "RevisionInfo":
        self.status = RevisionStatus.DEPRECATING_DRAFT
        return self

    def set_as_expired(self, expiration_datetime: Optional[datetime] = None) -> "RevisionInfo":
        self.status = RevisionStatus.EXPIRED
        self.expired_at = expiration_datetime or utcnow()
        return self

    def set_as_latest_release(
        self,
        user_id: Optional[int] = None,
        release_datetime: Optional[datetime] = None,
        set_metadata: bool = True,
    ) -> "RevisionInfo":
        """Mark as LATEST_RELEASE; set_metadata=False keeps released_at/by (rollback)."""
        if set_metadata:
            self.released_at = release_datetime or utcnow()
            self.released_by = user_id
        self.expired_at = None
        self.status = RevisionStatus.LATEST_RELEASE
        return self

    def set_as_deprecated(self, deprecation_datetime: Optional[datetime] = None) -> "RevisionInfo":
        at = deprecation_datetime or utcnow()
        if self.expired_at is None:
            self.expired_at = at
        self.status = RevisionStatus.DEPRECATED
        self.deprecated_at = at
        return self

    def clone(self, revision_id: Optional[int] = None) -> "RevisionInfo":
        """New metadata for a duplicated revision, reset to draft defaults.

        Status, release, expiry and deprecation fields never carry over,
        whatever the status of the source revision.
        """
        return RevisionInfo(
            status=RevisionStatus.PRIMARY_DRAFT,
            revision_type=self.revision_type,
            revision_id=revision_id,
            revision_set=self.revision_set,
        )

    def check_invariants(self) -> None:
        """Raise InvariantViolation if the validity fields are inconsistent."""
        if self.is_deprecated and self.deprecated_at is None:
            raise InvariantViolation(
                "deprecated_at can't be blank when deprecated",
                revision_info_id=self.id,
                revision_set_id=self.revision_set_id,
            )
        if not self.is_deprecated and self.deprecated_at is not None:
            raise InvariantViolation(
                f"deprecated_at must be blank for status {self.status.value}",
                revision_info_id=self.id,
                revision_set_id=self.revision_set_id,
            )
        if self.expired_at is None:
            return
        if self.released_at is None:
            raise InvariantViolation(
                "released_at must be set when expired_at is set",
                revision_info_id=self.id,
                revision_set_id=self.revision_set_id,
            )
        if self.released_at > self.expired_at:
            raise InvariantViolation(
                f"expired_at {self.expired_at} must come after released_at {self.released_at}",
                revision_info_id=self.id,
                revision_set_id=self.revision_set_id,
            )

    # Deprecation graph traversal

    def deprecator_of_chain(self) -> list["RevisionInfo"]:
        """All revisions this one deprecates, recursively.

        Ordered from the directly deprecated revision to the most remote one.
        """
        return self._deprecation_chain("deprecator_of")

    def deprecated_by_revisions_chain(self) -> list["RevisionInfo"]:
        """All revisions that deprecated this one, recursively.

        Ordered from the initial deprecator to the latest (active) one.
        """
        return self._deprecation_chain("deprecated_by_revisions")

    def _deprecation_chain(self, attribute: str) -> list["RevisionInfo"]:
        # Depth-first, direct edge first; visited keys stop diamonds and cycles
        chain: list[RevisionInfo] = []
        visited = {_node_key(self)}

        def walk(node: RevisionInfo) -> None:
            for neighbour in getattr(node, attribute):
                key = _node_key(neighbour)
                if key in visited:
                    continue
                visited.add(key)
                chain.append(neighbour)
                walk(neighbour)

        walk(self)
        return chain


def _node_key(info: RevisionInfo) -> tuple[str, int]:
    # Pending rows have no id yet
    if info.id is None:
        return ("pending", id(info))
    return ("persisted", info.id)


class RevisionChange(Base):
    """Append-only audit entry for a revision."""

    __tablename__ = "revision_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    revision_info_id = Column(
        Integer,
        ForeignKey("revision_infos.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = Column(Integer, nullable=True)
    description = Column(String(500), nullable=False)
    payload = Column(Text, nullable=False, default="")
    change_date = Column(DateTime, nullable=False, default=utcnow)

    revision_info = relationship("RevisionInfo", back_populates="revision_changes")

    def __repr__(self) -> str:
        return f"<RevisionChange {self.id} on RevisionInfo {self.revision_info_id}>"


@event.listens_for(RevisionInfo, "before_insert")
@event.listens_for(RevisionInfo, "before_update")
def _validate_revision_info(mapper, connection, target: RevisionInfo) -> None:
    target.check_invariants()
