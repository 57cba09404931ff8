"""Tests for deprecating drafts and the retroactive change engine."""
from datetime import datetime

import pytest

from revisable_core import deprecation
from revisable_core.config import get_settings
from revisable_core.deprecation import (
    affected_revisions,
    apply_deprecating_change,
    create_deprecating_draft,
    deprecated_by,
    deprecated_by_revisions,
    deprecated_by_revisions_chain,
    deprecator_of_chain,
    deprecator_of_revisions,
    update_deprecating_draft_datetime_range,
)
from revisable_core.exceptions import InvariantViolation, MissingPrerequisite
from revisable_core.intervals import OverlapCase
from revisable_core.models import RevisionInfo, RevisionStatus
from revisable_core.notifier import InProcessChangeNotifier, get_default_notifier
from revisable_core.revision_sets import (
    find_primary_draft,
    get_payload,
    latest_release,
    releases,
    revision_at,
)
from revisable_core.state_machine import IllegalStateTransition

NOW = datetime(2024, 6, 1)


def dt(month: int, day: int, year: int = 2024) -> datetime:
    return datetime(year, month, day)


class RecordingNotifier:
    """Notifier that records every call."""

    def __init__(self):
        self.calls = []

    def notify(self, entity_type, revision_set_id, affected_revision_ids):
        self.calls.append((entity_type, revision_set_id, list(affected_revision_ids)))


def deprecating_draft(db, source, released_at, expired_at, value="corrected"):
    """Create a deprecating draft of source covering [released_at, expired_at)."""
    draft = create_deprecating_draft(db, source, now=NOW)
    update_deprecating_draft_datetime_range(db, draft, released_at, expired_at)
    get_payload(db, draft).example_value = value
    db.commit()
    return draft


def apply(db, draft, **kwargs):
    kwargs.setdefault("notifier", RecordingNotifier())
    return apply_deprecating_change(db, draft, user_id=9, now=NOW, **kwargs)


class TestDeprecatingDraft:
    """Test creating and scoping deprecating drafts."""

    def test_copies_source_interval(self, db, release_history):
        (first, _), _ = release_history(dt(1, 1), dt(3, 1))

        draft = create_deprecating_draft(db, first, now=NOW)

        assert draft.status == RevisionStatus.DEPRECATING_DRAFT
        assert draft.released_at == dt(1, 1)
        assert draft.expired_at == dt(3, 1)
        assert draft.revision_id != first.revision_id
        assert get_payload(db, draft).example_value == "v1"

    def test_unreleased_source_starts_now(self, db, make_revision):
        info = make_revision()

        draft = create_deprecating_draft(db, info, now=NOW)

        assert draft.released_at == NOW
        assert draft.expired_at is None

    def test_non_deprecatable_type_rejected(self, db, release_history, example_model):
        (first,), _ = release_history(dt(1, 1), model=example_model)

        with pytest.raises(MissingPrerequisite, match="deprecatable"):
            create_deprecating_draft(db, first, now=NOW)

    def test_update_range_allows_future_and_open_ended(self, db, release_history):
        (first,), _ = release_history(dt(1, 1))
        draft = create_deprecating_draft(db, first, now=NOW)

        update_deprecating_draft_datetime_range(db, draft, dt(1, 1, 2030), None)

        assert draft.released_at == dt(1, 1, 2030)
        assert draft.expired_at is None

    def test_update_range_rejects_inverted_range(self, db, release_history):
        (first,), _ = release_history(dt(1, 1))
        draft = create_deprecating_draft(db, first, now=NOW)

        with pytest.raises(InvariantViolation):
            update_deprecating_draft_datetime_range(db, draft, dt(3, 1), dt(2, 1))
        with pytest.raises(InvariantViolation):
            update_deprecating_draft_datetime_range(db, draft, None, dt(2, 1))

    def test_update_range_requires_deprecating_draft(self, db, release_history):
        (first,), _ = release_history(dt(1, 1))

        with pytest.raises(IllegalStateTransition, match="Only a deprecating draft"):
            update_deprecating_draft_datetime_range(db, first, dt(1, 1), dt(2, 1))


class TestAffectedRevisions:
    """Test which releases a deprecating draft intersects."""

    def test_release_starting_at_draft_end_is_not_affected(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(3, 1))

        assert [r.id for r in affected_revisions(db, draft, now=NOW)] == [first.id]

    def test_release_ending_at_draft_start_is_not_affected(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, second, dt(3, 1), None)

        assert [r.id for r in affected_revisions(db, draft, now=NOW)] == [second.id]

    def test_draft_spanning_releases(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, second, dt(2, 1), None)

        assert [r.id for r in affected_revisions(db, draft, now=NOW)] == [first.id, second.id]

    def test_requires_deprecating_draft(self, db, release_history):
        (first,), _ = release_history(dt(1, 1))

        with pytest.raises(IllegalStateTransition):
            affected_revisions(db, first)


class TestFullyIncluded:
    """A correction inside one release splits it into before and after."""

    def test_correction_inside_expired_release(self, db, release_history):
        (first, second), primary = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))

        result = apply(db, draft)

        assert len(result.resolutions) == 1
        resolution = result.resolutions[0]
        assert resolution.revision_id == first.id
        assert resolution.case == OverlapCase.FULLY_INCLUDED

        before = db.get(RevisionInfo, resolution.before_revision_id)
        after = db.get(RevisionInfo, resolution.after_revision_id)
        assert (before.status, before.released_at, before.expired_at) == (RevisionStatus.EXPIRED, dt(1, 1), dt(2, 1))
        assert (after.status, after.released_at, after.expired_at) == (RevisionStatus.EXPIRED, dt(2, 15), dt(3, 1))
        assert before.released_by == 9 and after.released_by == 9
        assert get_payload(db, before).example_value == "v1"
        assert get_payload(db, after).example_value == "v1"

        assert first.status == RevisionStatus.DEPRECATED
        assert first.deprecated_at == NOW
        assert first.expired_at == dt(3, 1)
        assert draft.status == RevisionStatus.EXPIRED
        assert draft.released_by == 9
        assert second.status == RevisionStatus.LATEST_RELEASE

        assert [r.id for r in first.deprecated_by_revisions] == [draft.id, before.id, after.id]
        assert result.affected_revision_ids == [first.id, draft.id, before.id, after.id]
        assert result.primary_draft_overwritten is False
        assert find_primary_draft(db, primary.revision_set).id == primary.id

    def test_timeline_after_correction(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))
        revision_set = draft.revision_set

        result = apply(db, draft)
        resolution = result.resolutions[0]

        assert revision_at(db, revision_set, dt(1, 15)).id == resolution.before_revision_id
        assert revision_at(db, revision_set, dt(2, 5)).id == draft.id
        assert revision_at(db, revision_set, dt(2, 20)).id == resolution.after_revision_id
        assert revision_at(db, revision_set, dt(3, 5)).id == second.id
        assert get_payload(db, revision_at(db, revision_set, dt(2, 5))).example_value == "corrected"

    def test_correction_inside_ongoing_release(self, db, release_history):
        (latest,), primary = release_history(dt(1, 1))
        draft = deprecating_draft(db, latest, dt(2, 1), dt(2, 15))

        result = apply(db, draft)

        after = db.get(RevisionInfo, result.resolutions[0].after_revision_id)
        assert after.status == RevisionStatus.LATEST_RELEASE
        assert (after.released_at, after.expired_at) == (dt(2, 15), None)
        assert latest.status == RevisionStatus.DEPRECATED
        assert latest.expired_at == NOW
        assert latest_release(db, draft.revision_set).id == after.id
        assert result.primary_draft_overwritten is False
        assert find_primary_draft(db, draft.revision_set).id == primary.id


class TestFullyOverwritten:
    """A correction covering a whole release replaces it without splits."""

    def test_exact_bounded_match(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = create_deprecating_draft(db, first, now=NOW)

        result = apply(db, draft)

        resolution = result.resolutions[0]
        assert resolution.case == OverlapCase.FULLY_OVERWRITTEN
        assert resolution.created_revision_ids == []
        assert first.status == RevisionStatus.DEPRECATED
        assert draft.status == RevisionStatus.EXPIRED
        assert (draft.released_at, draft.expired_at) == (dt(1, 1), dt(3, 1))
        assert [r.id for r in first.deprecated_by_revisions] == [draft.id]
        assert result.affected_revision_ids == [first.id, draft.id]

    def test_exact_ongoing_match_overwrites_primary_draft(self, db, release_history):
        (latest,), primary = release_history(dt(1, 1))
        primary_id = primary.id
        draft = deprecating_draft(db, latest, dt(1, 1), None, value="rewritten")

        result = apply(db, draft)

        assert result.resolutions[0].case == OverlapCase.FULLY_OVERWRITTEN
        assert latest.status == RevisionStatus.DEPRECATED
        assert latest.expired_at == NOW
        assert draft.status == RevisionStatus.LATEST_RELEASE
        assert result.primary_draft_overwritten is True
        assert db.get(RevisionInfo, primary_id) is None
        new_primary = find_primary_draft(db, draft.revision_set)
        assert get_payload(db, new_primary).example_value == "rewritten"


class TestPartialOverlaps:
    """Corrections overlapping one side of a release."""

    def test_overwrites_end_of_ongoing_release(self, db, release_history):
        (latest,), primary = release_history(dt(1, 1))
        primary_id = primary.id
        draft = deprecating_draft(db, latest, dt(2, 1), None, value="retro")

        result = apply(db, draft)

        resolution = result.resolutions[0]
        assert resolution.case == OverlapCase.OVERWRITES_END
        assert resolution.after_revision_id is None
        before = db.get(RevisionInfo, resolution.before_revision_id)
        assert (before.status, before.released_at, before.expired_at) == (RevisionStatus.EXPIRED, dt(1, 1), dt(2, 1))
        assert draft.status == RevisionStatus.LATEST_RELEASE
        assert draft.released_at == dt(2, 1)
        assert result.affected_revision_ids == [latest.id, draft.id, before.id]

        assert result.primary_draft_overwritten is True
        assert db.get(RevisionInfo, primary_id) is None
        assert get_payload(db, find_primary_draft(db, draft.revision_set)).example_value == "retro"

    def test_overwrites_beginning(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(12, 1, 2023), dt(2, 1))

        result = apply(db, draft)

        resolution = result.resolutions[0]
        assert resolution.case == OverlapCase.OVERWRITES_BEGINNING
        assert resolution.before_revision_id is None
        after = db.get(RevisionInfo, resolution.after_revision_id)
        assert (after.status, after.released_at, after.expired_at) == (RevisionStatus.EXPIRED, dt(2, 1), dt(3, 1))
        assert draft.status == RevisionStatus.EXPIRED
        assert second.status == RevisionStatus.LATEST_RELEASE

    def test_correction_spanning_two_releases(self, db, release_history):
        (first, second), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, second, dt(2, 1), None)

        result = apply(db, draft)

        cases = {r.revision_id: r.case for r in result.resolutions}
        assert cases == {
            first.id: OverlapCase.OVERWRITES_END,
            second.id: OverlapCase.FULLY_OVERWRITTEN,
        }
        before_id = result.resolutions[0].before_revision_id
        assert result.affected_revision_ids == [first.id, second.id, draft.id, before_id]
        assert [r.id for r in releases(db, draft.revision_set)] == [before_id, draft.id]
        assert latest_release(db, draft.revision_set).id == draft.id


class TestApplyGuards:
    """Test that invalid applications leave the timeline untouched."""

    def test_requires_deprecating_draft(self, db, release_history):
        (first,), _ = release_history(dt(1, 1))

        with pytest.raises(IllegalStateTransition, match="Create a deprecating draft first"):
            apply(db, first)
        assert first.status == RevisionStatus.LATEST_RELEASE

    def test_failure_rolls_back_everything(self, db, release_history, monkeypatch):
        (latest,), _ = release_history(dt(1, 1))
        draft = deprecating_draft(db, latest, dt(2, 1), dt(2, 15))
        revision_count = db.query(RevisionInfo).count()

        def fail(*args, **kwargs):
            raise RuntimeError("link failed")

        monkeypatch.setattr(deprecation, "_link_deprecators", fail)

        with pytest.raises(RuntimeError):
            apply(db, draft)

        assert db.query(RevisionInfo).count() == revision_count
        assert latest.status == RevisionStatus.LATEST_RELEASE
        assert latest.deprecated_at is None
        assert draft.status == RevisionStatus.DEPRECATING_DRAFT

    def test_avoid_overwriting_primary_draft(self, db, release_history):
        (latest,), primary = release_history(dt(1, 1))
        draft = deprecating_draft(db, latest, dt(2, 1), None)

        result = apply(db, draft, avoid_overwriting_primary_draft=True)

        assert result.primary_draft_overwritten is False
        assert find_primary_draft(db, draft.revision_set).id == primary.id


class TestNotification:
    """Test post-commit change notification."""

    def test_notifier_receives_affected_revisions(self, db, release_history):
        (first, _), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))
        notifier = RecordingNotifier()

        result = apply(db, draft, notifier=notifier)

        assert result.notification_delivered is True
        assert notifier.calls == [
            ("DeprecatableExampleModel", draft.revision_set_id, result.affected_revision_ids),
        ]

    def test_default_notifier_dispatches_named_event(self, db, release_history):
        (first, _), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))
        events = []
        get_default_notifier().subscribe("DeprecatableExampleModel", events.append)

        result = apply_deprecating_change(db, draft, user_id=9, now=NOW)

        assert result.notification_delivered is True
        assert len(events) == 1
        assert events[0].event == "DeprecatableExampleModel_revision_retroactive_change"
        assert events[0].affected_revision_ids == result.affected_revision_ids

    def test_delivery_failure_keeps_committed_change(self, db, release_history):
        (first, _), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))
        notifier = InProcessChangeNotifier()

        def broken_listener(event):
            raise RuntimeError("cache unavailable")

        notifier.subscribe("DeprecatableExampleModel", broken_listener)

        result = apply(db, draft, notifier=notifier)

        assert result.notification_delivered is False
        assert "failed" in result.notification_error
        db.expire_all()
        assert first.status == RevisionStatus.DEPRECATED
        assert draft.status == RevisionStatus.EXPIRED

    def test_transport_error_reported_not_raised(self, db, release_history):
        (first, _), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))

        class UnreachableBrokerNotifier:
            def notify(self, entity_type, revision_set_id, affected_revision_ids):
                raise ConnectionError("broker unreachable")

        result = apply(db, draft, notifier=UnreachableBrokerNotifier())

        assert result.notification_delivered is False
        assert result.notification_error == "ConnectionError: broker unreachable"
        db.expire_all()
        assert first.status == RevisionStatus.DEPRECATED
        assert draft.status == RevisionStatus.EXPIRED

    def test_disabled_notifications(self, db, release_history, monkeypatch):
        monkeypatch.setenv("REVISABLE_NOTIFICATIONS_ENABLED", "false")
        get_settings.cache_clear()
        (first, _), _ = release_history(dt(1, 1), dt(3, 1))
        draft = deprecating_draft(db, first, dt(2, 1), dt(2, 15))
        notifier = RecordingNotifier()

        result = apply(db, draft, notifier=notifier)

        assert notifier.calls == []
        assert result.notification_delivered is False
        assert result.notification_error is None


class TestDeprecationGraph:
    """Test deprecation links across successive corrections."""

    @pytest.fixture
    def corrected_twice(self, db, release_history):
        """Ongoing release corrected from Feb 1, then again from Mar 1."""
        (original,), _ = release_history(dt(1, 1))

        first_fix = deprecating_draft(db, original, dt(2, 1), None, value="fix 1")
        first_result = apply(db, first_fix)

        second_fix = deprecating_draft(db, first_fix, dt(3, 1), None, value="fix 2")
        second_result = apply_deprecating_change(db, second_fix, user_id=10, notifier=RecordingNotifier(), now=NOW)

        return {
            "original": original,
            "first_fix": first_fix,
            "first_before": db.get(RevisionInfo, first_result.resolutions[0].before_revision_id),
            "second_fix": second_fix,
            "second_before": db.get(RevisionInfo, second_result.resolutions[0].before_revision_id),
        }

    def test_deprecated_by_chain(self, corrected_twice):
        r = corrected_twice

        chain = r["original"].deprecated_by_revisions_chain()

        assert chain == [r["first_fix"], r["second_fix"], r["second_before"], r["first_before"]]

    def test_deprecator_of_chain(self, corrected_twice):
        r = corrected_twice

        assert r["second_fix"].deprecator_of_chain() == [r["first_fix"], r["original"]]
        assert r["second_before"].deprecator_of_chain() == [r["first_fix"], r["original"]]

    def test_deprecated_by_actor(self, corrected_twice):
        r = corrected_twice

        assert deprecated_by(r["original"]) == 9
        assert deprecated_by(r["first_fix"]) == 10
        assert deprecated_by(r["second_fix"]) is None

    def test_payload_chains(self, db, corrected_twice):
        r = corrected_twice

        newest = deprecated_by_revisions_chain(db, r["original"])
        oldest = deprecator_of_chain(db, r["second_fix"])

        assert [p.example_value for p in newest[:2]] == ["fix 1", "fix 2"]
        assert [p.example_value for p in oldest] == ["fix 1", "v1"]

    def test_direct_payload_accessors(self, db, corrected_twice):
        r = corrected_twice

        assert [p.example_value for p in deprecated_by_revisions(db, r["original"])] == ["fix 1", "v1"]
        assert [p.example_value for p in deprecator_of_revisions(db, r["second_fix"])] == ["fix 1"]

    def test_latest_timeline(self, db, corrected_twice):
        r = corrected_twice
        revision_set = r["original"].revision_set

        assert [info.id for info in releases(db, revision_set)] == [
            r["first_before"].id,
            r["second_before"].id,
            r["second_fix"].id,
        ]
        assert latest_release(db, revision_set).id == r["second_fix"].id
