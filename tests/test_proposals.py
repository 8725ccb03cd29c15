"""Tests for trigger-driven proposal generation."""

from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from plan_builder.errors import PlanValidationError
from plan_builder.services.diff_ops import (
    AddNote,
    AdjustWeekVolume,
    SwapSessionType,
    UpdateSession,
    hash_diff,
    op_week_index,
)
from plan_builder.services.plan_generator import generate_plan
from plan_builder.services.plan_model import DraftSnapshot, LockState, PlanSession, is_intensity_type
from plan_builder.services.proposals import PROPOSED, build_change_proposal, generate_proposal
from plan_builder.services.triggers import derive_triggers
from plan_builder.validators import FeedbackRecord, PlanSetup


def _make_plan(**overrides):
    defaults = {
        "event_date": date(2026, 4, 25),
        "start_date": date(2026, 3, 2),
        "weeks_to_event": 8,
        "weekly_availability_days": ["Mon", "Tue", "Wed", "Fri", "Sat"],
        "weekly_availability_minutes": 360,
        "long_session_day": "Sat",
    }
    defaults.update(overrides)
    return generate_plan(PlanSetup(**defaults))


def _intensity(plan, week_index):
    return [s for s in plan.week(week_index).sessions if is_intensity_type(s.type)]


def _session(id, week_index, type, duration=60, ordinal=0, locked=False):
    return PlanSession(
        id=id, week_index=week_index, ordinal=ordinal, day_of_week=ordinal,
        discipline="run", type=type, duration_minutes=duration, locked=locked,
    )


def test_no_triggers_gives_empty_diff():
    result = generate_proposal([], _make_plan())
    assert result.diff == []
    assert result.respects_locks is True
    assert result.diff_hash == hash_diff([])


def test_unknown_trigger_type_rejected():
    with pytest.raises(PlanValidationError):
        generate_proposal(["FATIGUE"], _make_plan())


def test_soreness_converts_next_intensity_and_reduces_next_week():
    plan = _make_plan()
    target = _intensity(plan, 0)[0]
    result = generate_proposal(["SORENESS"], plan, current_week_index=0)
    assert result.diff == [
        SwapSessionType(session_id=target.id, new_type="recovery"),
        AddNote(target="session", session_id=target.id, text="SORENESS: converted to recovery."),
        AdjustWeekVolume(week_index=1, pct_delta=-0.10),
        AddNote(target="week", week_index=1, text="Volume adjustment -10% (SORENESS)."),
    ]
    assert result.respects_locks is True


def test_current_week_moves_the_targets():
    plan = _make_plan()
    result = generate_proposal(["SORENESS"], plan, current_week_index=1)
    swap = result.diff[0]
    assert swap.session_id == _intensity(plan, 1)[0].id
    assert result.diff[2].week_index == 2


def test_too_hard_downgrades_one_step():
    draft = DraftSnapshot(
        weeks=((0, False), (1, False)),
        sessions=(_session("a", 0, "threshold"), _session("b", 1, "tempo", ordinal=1)),
    )
    result = generate_proposal(["TOO_HARD"], draft)
    assert result.diff[0] == SwapSessionType(session_id="a", new_type="tempo")
    assert "threshold -> tempo" in result.diff[1].text


def test_soreness_and_too_hard_target_different_sessions():
    plan = _make_plan()
    first, second = _intensity(plan, 0)[:2]
    result = generate_proposal(["TOO_HARD", "SORENESS"], plan)
    swaps = [op for op in result.diff if isinstance(op, SwapSessionType)]
    assert swaps == [
        SwapSessionType(session_id=first.id, new_type="recovery"),
        SwapSessionType(session_id=second.id, new_type="endurance"),
    ]


def test_missed_key_reduces_volume_and_replaces_next_week_intensity():
    plan = _make_plan()
    result = generate_proposal(["MISSED_KEY"], plan)
    assert result.diff[0] == AdjustWeekVolume(week_index=1, pct_delta=-0.15)
    assert result.diff[2] == SwapSessionType(session_id=_intensity(plan, 1)[0].id, new_type="endurance")


def test_high_compliance_extends_longest_next_week_session():
    plan = _make_plan()
    longest = max(plan.week(1).sessions, key=lambda s: s.duration_minutes)
    result = generate_proposal(["HIGH_COMPLIANCE"], plan)
    op = result.diff[0]
    assert isinstance(op, UpdateSession)
    assert op.session_id == longest.id
    assert op.patch.duration_minutes == longest.duration_minutes + 10


def test_high_compliance_without_sessions_bumps_week_volume():
    draft = DraftSnapshot(weeks=((0, False), (1, False)), sessions=(_session("a", 0, "endurance"),))
    result = generate_proposal(["HIGH_COMPLIANCE"], draft)
    assert result.diff[0] == AdjustWeekVolume(week_index=1, pct_delta=0.05)


def test_locked_next_week_blocks_volume_change():
    plan = _make_plan()
    draft = DraftSnapshot.from_plan(plan, LockState.of(weeks=[1]))
    result = generate_proposal(["SORENESS"], draft)
    assert [op.op for op in result.diff] == ["SWAP_SESSION_TYPE", "ADD_NOTE"]
    assert result.respects_locks is False
    assert "Blocked by lock" in result.rationale_text


def test_locked_session_is_skipped():
    plan = _make_plan()
    first, second = _intensity(plan, 0)[:2]
    draft = DraftSnapshot.from_plan(plan, LockState.of(sessions=[first.id]))
    result = generate_proposal(["SORENESS"], draft)
    assert result.diff[0].session_id == second.id


def test_trigger_order_does_not_change_diff():
    plan = _make_plan()
    a = generate_proposal(["HIGH_COMPLIANCE", "MISSED_KEY", "SORENESS"], plan)
    b = generate_proposal(["SORENESS", "HIGH_COMPLIANCE", "MISSED_KEY", "SORENESS"], plan)
    assert a.diff_hash == b.diff_hash
    assert a.rationale_text == b.rationale_text


def test_generation_is_deterministic():
    a = generate_proposal(["SORENESS", "MISSED_KEY"], _make_plan())
    b = generate_proposal(["SORENESS", "MISSED_KEY"], _make_plan())
    assert a == b


class TestBuildChangeProposal:
    NOW = datetime(2026, 3, 4, 18, 0)

    def _triggers(self):
        fb = [
            FeedbackRecord(
                id="fb1", created_at=self.NOW - timedelta(hours=2), session_id="w00s00",
                session_type="tempo", soreness_flag=True,
            )
        ]
        return derive_triggers(self.NOW, 7, fb)

    def test_proposal_is_proposed_and_hashed(self):
        plan = _make_plan()
        proposal = build_change_proposal(plan, self._triggers(), self.NOW)
        assert proposal.status == PROPOSED
        assert proposal.plan_id == plan.id
        assert proposal.trigger_types == ("SORENESS",)
        assert proposal.diff_hash == hash_diff(list(proposal.diff))
        assert proposal.id.startswith("prop-")
        assert proposal.dropped_ops == 0
        assert proposal.decided_at is None

    def test_proposal_is_deterministic(self):
        a = build_change_proposal(_make_plan(), self._triggers(), self.NOW)
        b = build_change_proposal(_make_plan(), self._triggers(), self.NOW)
        assert a == b

    def test_past_weeks_are_not_targeted(self):
        plan = _make_plan()
        # 2026-03-11 falls in week 1
        proposal = build_change_proposal(plan, self._triggers(), self.NOW, today=date(2026, 3, 11))
        session_weeks = {s.id: s.week_index for s in plan.sessions}
        assert proposal.diff
        for op in proposal.diff:
            assert op_week_index(op, session_weeks) >= 1
