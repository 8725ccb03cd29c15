"""Tests for adaptation trigger derivation."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from plan_builder.config import AdaptationPolicy
from plan_builder.errors import PlanValidationError
from plan_builder.services.triggers import (
    dedupe_triggers,
    derive_triggers,
    is_key_session,
    parse_trigger_types,
)
from plan_builder.validators import ActivityRecord, FeedbackRecord

NOW = datetime(2026, 2, 21, 12, 0)


def _make_feedback(**overrides) -> FeedbackRecord:
    defaults = {
        "id": "fb1",
        "created_at": NOW - timedelta(days=1),
        "session_id": "w01s00",
        "session_type": "endurance",
        "session_duration_minutes": 45,
        "completed_status": "DONE",
        "feel": "OK",
        "rpe": 5,
    }
    defaults.update(overrides)
    return FeedbackRecord(**defaults)


def _make_activity(**overrides) -> ActivityRecord:
    defaults = {
        "id": "act1",
        "start_time": NOW - timedelta(days=1),
        "rpe": 5,
        "pain_flag": False,
        "duration_minutes": 45,
    }
    defaults.update(overrides)
    return ActivityRecord(**defaults)


def _types(triggers):
    return [t.trigger_type for t in triggers]


class TestSoreness:
    def test_soreness_feedback_emits_trigger(self):
        fb = [_make_feedback(soreness_flag=True, soreness_notes="calf")]
        triggers = derive_triggers(NOW, 7, fb)
        assert _types(triggers) == ["SORENESS"]
        assert triggers[0].evidence_ids == ["fb1"]

    def test_pain_flag_activity_emits_trigger(self):
        acts = [_make_activity(pain_flag=True, start_time=datetime(2026, 2, 20, 7, 0))]
        triggers = derive_triggers(NOW, 14, [_make_feedback()], acts)
        assert "SORENESS" in _types(triggers)
        sore = next(t for t in triggers if t.trigger_type == "SORENESS")
        assert sore.summary["pain_flag_count"] == 1

    def test_pain_flag_already_reported_same_day_not_double_counted(self):
        when = datetime(2026, 2, 20, 7, 0)
        fb = [_make_feedback(soreness_flag=True, created_at=when + timedelta(hours=3))]
        acts = [_make_activity(pain_flag=True, start_time=when)]
        sore = derive_triggers(NOW, 7, fb, acts)[0]
        assert sore.evidence_ids == ["fb1"]
        assert sore.summary["pain_flag_count"] == 0

    def test_soreness_outside_window_ignored(self):
        fb = [_make_feedback(soreness_flag=True, created_at=NOW - timedelta(days=10))]
        assert "SORENESS" not in _types(derive_triggers(NOW, 7, fb))


class TestTooHard:
    def test_two_high_effort_records_emit_trigger(self):
        fb = [
            _make_feedback(id="fb1", rpe=8, created_at=datetime(2026, 2, 20, 9, 0)),
            _make_feedback(id="fb2", rpe=9, created_at=datetime(2026, 2, 19, 9, 0)),
        ]
        acts = [_make_activity(rpe=8, start_time=datetime(2026, 2, 18, 7, 0))]
        triggers = derive_triggers(NOW, 14, fb, acts)
        too_hard = next(t for t in triggers if t.trigger_type == "TOO_HARD")
        assert too_hard.evidence_ids == ["fb2", "fb1", "act1"]

    def test_single_too_hard_is_not_a_cluster(self):
        fb = [_make_feedback(feel="TOO_HARD")]
        assert "TOO_HARD" not in _types(derive_triggers(NOW, 14, fb))

    def test_too_hard_feel_counts_without_rpe(self):
        fb = [
            _make_feedback(id="fb1", feel="TOO_HARD", rpe=None),
            _make_feedback(id="fb2", feel="TOO_HARD", rpe=None, created_at=NOW - timedelta(days=2)),
        ]
        too_hard = next(t for t in derive_triggers(NOW, 14, fb) if t.trigger_type == "TOO_HARD")
        assert too_hard.summary["too_hard_count"] == 2


class TestMissedKey:
    def test_skipped_key_sessions_emit_trigger(self):
        fb = [
            _make_feedback(id="fb1", session_type="tempo", completed_status="SKIPPED"),
            _make_feedback(id="fb2", session_type="threshold", completed_status="SKIPPED",
                           created_at=NOW - timedelta(days=3)),
            _make_feedback(id="fb3", session_type="tempo", created_at=NOW - timedelta(days=5)),
        ]
        triggers = derive_triggers(NOW, 14, fb)
        missed = next(t for t in triggers if t.trigger_type == "MISSED_KEY")
        assert missed.summary["key_opportunities"] == 3
        assert missed.summary["missed_count"] == 2
        assert sorted(missed.evidence_ids) == ["fb1", "fb2"]

    def test_single_key_opportunity_is_not_enough(self):
        fb = [_make_feedback(session_type="tempo", completed_status="SKIPPED")]
        assert "MISSED_KEY" not in _types(derive_triggers(NOW, 14, fb))

    def test_rate_must_exceed_threshold(self):
        fb = [
            _make_feedback(id="fb1", session_type="tempo", completed_status="SKIPPED"),
            _make_feedback(id="fb2", session_type="tempo", created_at=NOW - timedelta(days=3)),
        ]
        assert "MISSED_KEY" not in _types(derive_triggers(NOW, 14, fb))
        fb.append(_make_feedback(id="fb3", session_type="threshold", completed_status="PARTIAL",
                                 created_at=NOW - timedelta(days=4)))
        assert "MISSED_KEY" in _types(derive_triggers(NOW, 14, fb))

    def test_long_sessions_count_as_key(self):
        policy = AdaptationPolicy()
        assert is_key_session(_make_feedback(session_duration_minutes=120), policy)
        assert is_key_session(_make_feedback(session_notes="Long run"), policy)
        assert not is_key_session(_make_feedback(), policy)


class TestHighCompliance:
    def test_small_sample_does_not_emit(self):
        fb = [_make_feedback(id="fb1"), _make_feedback(id="fb2", created_at=NOW - timedelta(days=2))]
        assert derive_triggers(NOW, 14, fb) == []

    def test_adequate_sample_emits(self):
        fb = [
            _make_feedback(id=f"fb{i}", created_at=NOW - timedelta(days=i + 1),
                           completed_status="PARTIAL" if i == 3 else "DONE", rpe=6)
            for i in range(4)
        ]
        triggers = derive_triggers(NOW, 14, fb)
        assert _types(triggers) == ["HIGH_COMPLIANCE"]
        assert triggers[0].summary["compliance"] == 0.875

    def test_suppressed_by_soreness(self):
        fb = [
            _make_feedback(id=f"fb{i}", created_at=NOW - timedelta(days=i + 1), soreness_flag=(i == 0))
            for i in range(5)
        ]
        assert _types(derive_triggers(NOW, 14, fb)) == ["SORENESS"]


def test_trigger_ids_are_deterministic():
    fb = [_make_feedback(soreness_flag=True)]
    a = derive_triggers(NOW, 7, fb)
    b = derive_triggers(NOW, 7, list(reversed(fb)))
    assert [t.id for t in a] == [t.id for t in b]
    assert a[0].id.startswith("trg-")


def test_window_bounds_validated():
    with pytest.raises(PlanValidationError):
        derive_triggers(NOW, 0, [])
    with pytest.raises(PlanValidationError):
        derive_triggers(NOW, 61, [])


def test_parse_trigger_types_orders_and_dedupes():
    assert parse_trigger_types(["high_compliance", "SORENESS", "soreness"]) == ["SORENESS", "HIGH_COMPLIANCE"]
    with pytest.raises(PlanValidationError):
        parse_trigger_types(["FATIGUE"])


def test_dedupe_triggers_skips_same_type_and_window():
    fb = [_make_feedback(soreness_flag=True)]
    first = derive_triggers(NOW, 7, fb)
    again = derive_triggers(NOW, 7, fb + [_make_feedback(id="fb2", soreness_flag=True)])
    assert dedupe_triggers(again, first) == []
    later = derive_triggers(NOW + timedelta(days=1), 7, fb)
    assert len(dedupe_triggers(later, first)) == 1
