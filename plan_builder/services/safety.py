"""Safety rewrite for proposal diffs.

Every suggested diff passes through ``rewrite_for_safe_apply`` before it is
stored, whatever produced it. The rewrite never raises for well-typed ops; it
drops or clamps instead and counts what it dropped.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Sequence

from plan_builder.config import AdaptationPolicy
from plan_builder.logging_config import log_context
from plan_builder.services.diff_ops import (
    AddNote,
    AdjustWeekVolume,
    DiffOp,
    RemoveSession,
    SessionPatch,
    SwapSessionType,
    UpdateSession,
    op_session_id,
)
from plan_builder.services.plan_model import PlanSession, escalates_intensity
from plan_builder.services.triggers import has_protective_trigger
from plan_builder.validators import PlanSetup, start_of_week

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SafeRewriteResult:
    diff: list[DiffOp]
    dropped_ops: int
    current_week_index: int
    notes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SafetyReview:
    safe: bool
    reasons: list[str]
    metrics: dict[str, Any]


def week_index_on(setup: PlanSetup, today: date) -> int:
    """Plan week containing ``today``; 0 before the plan starts."""
    weeks = (start_of_week(today, setup.week_start) - setup.effective_start_date).days // 7
    return max(0, weeks)


def clamp_volume_pct(pct_delta: float, policy: AdaptationPolicy) -> float:
    return min(max(pct_delta, policy.volume_pct_min), policy.volume_pct_max)


def clamp_session_minutes(baseline: int, requested: int, policy: AdaptationPolicy) -> int:
    """Hold a duration within the per-session change cap of ``baseline``, then the absolute bounds."""
    cap = policy.session_duration_cap_pct
    low = math.ceil(baseline * (1 - cap))
    high = math.floor(baseline * (1 + cap))
    capped = min(max(requested, low), high)
    return min(max(capped, policy.session_min_minutes), policy.session_max_minutes)


def rewrite_for_safe_apply(
    setup: PlanSetup,
    sessions: Sequence[PlanSession],
    diff: Iterable[DiffOp],
    trigger_types: Iterable[str],
    locked_weeks: Iterable[int] = (),
    today: date | None = None,
    policy: AdaptationPolicy | None = None,
) -> SafeRewriteResult:
    """Return a diff that respects locks, the current week and the change caps.

    - REMOVE_SESSION is always dropped
    - ops on past weeks, locked weeks, locked or unknown sessions are dropped
    - volume deltas for the same week are merged, then clamped to the policy band
    - with a protective trigger, type changes never raise intensity
    - session durations stay within the per-session cap and absolute bounds
    """
    policy = policy or AdaptationPolicy()
    protective = has_protective_trigger(trigger_types)
    current = week_index_on(setup, today or date.today())
    locked_week_set = set(locked_weeks)
    by_id = {s.id: s for s in sessions}
    running_type = {s.id: s.type for s in sessions}

    kept: list[DiffOp] = []
    notes: list[str] = []
    dropped: list[DiffOp] = []
    # week -> (position in kept, volume ops merged into it)
    volume_ops: dict[int, tuple[int, list[AdjustWeekVolume]]] = {}

    def drop(reason: str) -> None:
        dropped.append(op)
        notes.append(reason)

    for op in diff:
        if isinstance(op, RemoveSession):
            drop(f"Dropped REMOVE_SESSION for {op.session_id}: session removal is not allowed.")
            continue

        session_id = op_session_id(op)
        if session_id is not None:
            session = by_id.get(session_id)
            if session is None:
                drop(f"Dropped {op.op} for unknown session {session_id}.")
                continue
            week = session.week_index
        else:
            week = op.week_index
            if week >= setup.weeks_to_event:
                drop(f"Dropped {op.op} for unknown week {week}.")
                continue

        if week < current:
            drop(f"Dropped {op.op} on past week {week} (current week {current}).")
            continue
        if week in locked_week_set:
            drop(f"Dropped {op.op} on locked week {week}.")
            continue
        if session_id is not None and by_id[session_id].locked:
            drop(f"Dropped {op.op} on locked session {session_id}.")
            continue

        if isinstance(op, AdjustWeekVolume):
            if week in volume_ops:
                volume_ops[week][1].append(op)
                continue
            volume_ops[week] = (len(kept), [op])
        elif isinstance(op, SwapSessionType):
            current_type = running_type[session_id]
            if protective and escalates_intensity(current_type, op.new_type):
                notes.append(f"Kept {session_id} as {current_type}: no intensity increase under protective triggers.")
                op = SwapSessionType(session_id=session_id, new_type=current_type)
            running_type[session_id] = op.new_type
        elif isinstance(op, UpdateSession):
            patch = op.patch
            updates: dict[str, Any] = {}
            if patch.type is not None:
                current_type = running_type[session_id]
                if protective and escalates_intensity(current_type, patch.type):
                    notes.append(f"Kept {session_id} as {current_type}: no intensity increase under protective triggers.")
                    updates["type"] = current_type
                running_type[session_id] = updates.get("type", patch.type)
            if patch.duration_minutes is not None:
                minutes = clamp_session_minutes(by_id[session_id].duration_minutes, patch.duration_minutes, policy)
                if minutes != patch.duration_minutes:
                    notes.append(f"Capped {session_id} duration {patch.duration_minutes} to {minutes} minutes.")
                    updates["duration_minutes"] = minutes
            if updates:
                op = UpdateSession(session_id=session_id, patch=SessionPatch(**{**patch.model_dump(), **updates}))
        elif not isinstance(op, AddNote):
            raise TypeError(f"Unsupported diff op: {type(op).__name__}")

        kept.append(op)

    for week, (position, ops) in volume_ops.items():
        requested = ops[0].pct_delta
        if len(ops) > 1:
            factor = 1.0
            for o in ops:
                factor *= 1 + o.pct_delta
            requested = round(factor - 1, 4)
            notes.append(f"Merged {len(ops)} volume changes for week {week} into {requested:+.2f}.")
        pct = clamp_volume_pct(requested, policy)
        if pct != requested:
            notes.append(f"Clamped week {week} volume change {requested:+.2f} to {pct:+.2f}.")
        if len(ops) > 1 or pct != requested:
            kept[position] = AdjustWeekVolume(week_index=week, pct_delta=pct)

    if notes:
        logger.info(
            "Safety rewrite changed proposal diff",
            extra=log_context(dropped_ops=len(dropped), adjustments=len(notes) - len(dropped), current_week_index=current),
        )
    return SafeRewriteResult(diff=kept, dropped_ops=len(dropped), current_week_index=current, notes=notes)


def review_proposal_safety(
    setup: PlanSetup,
    sessions: Sequence[PlanSession],
    diff: Sequence[DiffOp],
    trigger_types: Iterable[str],
    locked_weeks: Iterable[int] = (),
    today: date | None = None,
    policy: AdaptationPolicy | None = None,
) -> SafetyReview:
    """Report what the safety rewrite would change, without changing ``diff``."""
    diff = list(diff)
    result = rewrite_for_safe_apply(setup, sessions, diff, trigger_types, locked_weeks, today, policy)
    by_id = {s.id: s for s in sessions}
    duration_delta = 0
    for op in diff:
        if isinstance(op, UpdateSession) and op.patch.duration_minutes is not None and op.session_id in by_id:
            duration_delta += op.patch.duration_minutes - by_id[op.session_id].duration_minutes
    metrics = {
        "ops": len(diff),
        "kept_ops": len(result.diff),
        "dropped_ops": result.dropped_ops,
        "removals": sum(1 for op in diff if isinstance(op, RemoveSession)),
        "max_abs_volume_pct": max(
            (abs(op.pct_delta) for op in diff if isinstance(op, AdjustWeekVolume)), default=0.0
        ),
        "requested_duration_delta_minutes": duration_delta,
        "current_week_index": result.current_week_index,
    }
    return SafetyReview(safe=not result.notes, reasons=list(result.notes), metrics=metrics)


def _describe_op(op: DiffOp) -> str:
    if isinstance(op, UpdateSession):
        parts = []
        if op.patch.type is not None:
            parts.append(f"type {op.patch.type}")
        if op.patch.duration_minutes is not None:
            parts.append(f"{op.patch.duration_minutes} min")
        if op.patch.notes is not None:
            parts.append("notes")
        return f"Session {op.session_id} updated ({', '.join(parts) or 'no fields'})"
    if isinstance(op, SwapSessionType):
        return f"Session {op.session_id} changed to {op.new_type}"
    if isinstance(op, AdjustWeekVolume):
        pct = int(round(op.pct_delta * 100))
        return f"Week {op.week_index} volume {pct:+d}%"
    if isinstance(op, RemoveSession):
        return f"Session {op.session_id} removed"
    if isinstance(op, AddNote):
        where = f"session {op.session_id}" if op.target == "session" else f"week {op.week_index}"
        return f"Note on {where}: {op.text}"
    raise TypeError(f"Unsupported diff op: {type(op).__name__}")


def summarize_proposal_action(diff: Sequence[DiffOp], trigger_types: Iterable[str], rationale_text: str = "") -> str:
    """Human readable "Why/Changed" text for audit records."""
    types = list(trigger_types)
    why = f"Why: {', '.join(types) if types else 'manual change'}."
    if rationale_text:
        why += f" {rationale_text.splitlines()[0]}"
    changed = [_describe_op(op) for op in diff if not isinstance(op, AddNote)]
    lines = [why, "Changed: " + ("; ".join(changed) if changed else "notes only") + "."]
    return "\n".join(lines)
