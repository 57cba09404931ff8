"""Half-open validity intervals and retroactive overlap classification.

A released revision is valid over ``[released_at, expired_at)``. An unset
``expired_at`` means the revision is ongoing and compares as later than any
concrete timestamp.

When a deprecating draft D is applied, every affected release R falls in
exactly one of four cases, decided by two predicates:

| Case                 | released_after(D, R) | expires_before(D, R) |
|----------------------|----------------------|----------------------|
| FULLY_INCLUDED       | True                 | True                 |
| FULLY_OVERWRITTEN    | False                | False                |
| OVERWRITES_END       | True                 | False                |
| OVERWRITES_BEGINNING | False                | True                 |
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


# Smallest representable step between stored timestamps. Subtracting it
# from an inclusive upper bound turns it into an exclusive one.
TIMESTAMP_RESOLUTION = timedelta(microseconds=1)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OverlapCase(str, enum.Enum):
    """How a deprecating interval overlaps an affected release."""

    FULLY_INCLUDED = "fully_included"              # split into before + after
    FULLY_OVERWRITTEN = "fully_overwritten"        # deprecated outright
    OVERWRITES_END = "overwrites_end"              # before split only
    OVERWRITES_BEGINNING = "overwrites_beginning"  # after split only


@dataclass(frozen=True)
class ValidityInterval:
    """Right-open interval ``[start, end)``; ``end=None`` is open-ended."""

    start: datetime
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Interval end {self.end} is before start {self.start}")

    @property
    def is_ongoing(self) -> bool:
        return self.end is None

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant and (self.end is None or instant < self.end)

    def overlaps(self, other: "ValidityInterval") -> bool:
        """True when the two intervals share at least one instant.

        Touching boundaries (``self.end == other.start``) do not overlap.
        """
        starts_before_other_ends = other.end is None or self.start < other.end
        ends_after_other_starts = self.end is None or self.end > other.start
        return starts_before_other_ends and ends_after_other_starts


def released_after(start: datetime, other_start: datetime) -> bool:
    """Check if an interval begins strictly after another one."""
    return start > other_start


def expires_before(end: Optional[datetime], other_end: Optional[datetime]) -> bool:
    """Check if an interval ends strictly before another one.

    Unset ends are the latest possible instant: two unset ends are equal,
    an unset end is never before a set one, and a set end is always
    before an unset one.
    """
    if end == other_end:
        return False
    if end is None:
        return False
    if other_end is None:
        return True
    return end < other_end


def classify_overlap(deprecating: ValidityInterval, affected: ValidityInterval) -> OverlapCase:
    """Classify how ``deprecating`` overlaps ``affected``.

    Raises:
        ValueError: If the intervals do not overlap at all
    """
    if not deprecating.overlaps(affected):
        raise ValueError(
            f"Interval [{deprecating.start}, {deprecating.end}) does not overlap "
            f"[{affected.start}, {affected.end})"
        )

    starts_later = released_after(deprecating.start, affected.start)
    ends_earlier = expires_before(deprecating.end, affected.end)

    if starts_later and ends_earlier:
        return OverlapCase.FULLY_INCLUDED
    if not starts_later and not ends_earlier:
        return OverlapCase.FULLY_OVERWRITTEN
    if starts_later:
        return OverlapCase.OVERWRITES_END
    return OverlapCase.OVERWRITES_BEGINNING


def split_intervals(
    case: OverlapCase,
    deprecating: ValidityInterval,
    affected: ValidityInterval,
) -> tuple[Optional[ValidityInterval], Optional[ValidityInterval]]:
    """Return the (before, after) remnants of ``affected`` left uncovered.

    The before remnant is ``[affected.start, deprecating.start)`` and the
    after remnant is ``[deprecating.end, affected.end)``; either is None
    when the case leaves nothing on that side.
    """
    before = None
    after = None
    if case in (OverlapCase.FULLY_INCLUDED, OverlapCase.OVERWRITES_END):
        before = ValidityInterval(affected.start, deprecating.start)
    if case in (OverlapCase.FULLY_INCLUDED, OverlapCase.OVERWRITES_BEGINNING):
        after = ValidityInterval(deprecating.end, affected.end)
    return before, after
