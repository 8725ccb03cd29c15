"""Deterministic multi-week plan generation.

Each week is built in three passes: pick the training days and session
slots, assign disciplines and session types, then allocate minutes under the
weekly cap. When the setup cannot be honoured as written, constraints are
relaxed in a fixed order (doubles first, then session count) and the
relaxation is logged; a week that cannot hold a single minimum-length
session raises InfeasiblePlanError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

from plan_builder.errors import InfeasiblePlanError
from plan_builder.logging_config import log_context
from plan_builder.services.plan_model import GeneratedPlan, PlanSession, PlanWeek
from plan_builder.services.stable_hash import compute_stable_hash
from plan_builder.validators import PlanSetup, day_sort_key

logger = logging.getLogger(__name__)

MIN_SESSION_MIN = 20
MAX_SESSION_MIN = 180
MAX_LONG_SESSION_MIN = 240

SESSIONS_BY_RISK = {"low": 4, "med": 5, "high": 6}
PHASE_VOLUME = {"Base": 0.85, "Build": 0.95, "Peak": 1.0}
# (final week, penultimate week)
TAPER_VOLUME = {"low": (0.75, 0.85), "med": (0.7, 0.8), "high": (0.6, 0.75)}
DEFAULT_RECOVERY_EVERY = 4

SESSION_WEIGHTS = {"long": 2.2, "intensity": 1.2, "endurance": 1.0, "easy": 0.7}

DISCIPLINE_ROTATION = {
    "balanced": ("run", "bike", "swim"),
    "swim": ("swim", "bike", "swim", "run"),
    "bike": ("bike", "run", "bike"),
    "run": ("run", "bike", "run"),
}


@dataclass
class _Slot:
    day: int
    role: str  # "long" | "intensity" | "easy" | "double"
    discipline: str = ""
    type: str = ""
    notes: str | None = None
    minutes: int = 0

    @property
    def weight_key(self) -> str:
        if self.role == "long":
            return "long"
        if self.role == "intensity":
            return "intensity"
        if self.type == "endurance":
            return "endurance"
        return "easy"


def _phase_for_week(week_index: int, total: int, recovery_every: int) -> str:
    remaining = total - 1 - week_index
    if total >= 4 and remaining < 2:
        return "Taper"
    week = week_index + 1
    if recovery_every and week % recovery_every == 0:
        return "Recovery"
    ratio = week / total
    if ratio < 0.4:
        return "Base"
    if ratio < 0.75:
        return "Build"
    return "Peak"


def _week_minutes(setup: PlanSetup, week_index: int, phase: str) -> int:
    cap = setup.weekly_availability_minutes
    base = cap
    if setup.weekly_minutes_by_week and week_index < len(setup.weekly_minutes_by_week):
        base = setup.weekly_minutes_by_week[week_index]

    if phase == "Taper":
        final, penultimate = TAPER_VOLUME[setup.risk_tolerance]
        multiplier = final if week_index == setup.weeks_to_event - 1 else penultimate
    elif phase == "Recovery":
        multiplier = setup.recovery_week_multiplier
    else:
        multiplier = PHASE_VOLUME.get(phase, 1.0)
    return min(cap, int(round(base * multiplier)))


def _pick_long_day(setup: PlanSetup, days: list[int]) -> int:
    if setup.long_session_day is not None and setup.long_session_day in days:
        return setup.long_session_day
    # Prefer the weekend when the athlete has not named a day.
    for day in (5, 6):
        if day in days:
            return day
    return days[-1]


def _target_sessions(setup: PlanSetup, days_count: int) -> int:
    max_sessions = days_count + min(setup.max_doubles_per_week, days_count)
    wanted = setup.sessions_per_week_override or SESSIONS_BY_RISK[setup.risk_tolerance]
    return max(1, min(wanted, max_sessions))


def _spread(candidates: list[int], count: int) -> list[int]:
    """Pick ``count`` entries spread evenly across ``candidates`` (order kept)."""
    if count >= len(candidates):
        return list(candidates)
    if count <= 0:
        return []
    step = len(candidates) / count
    return [candidates[int(i * step)] for i in range(count)]


def _intensity_limit(setup: PlanSetup, phase: str) -> int:
    if phase in {"Recovery", "Taper"}:
        return min(1, setup.max_intensity_days_per_week)
    return setup.max_intensity_days_per_week


def _choose_intensity_days(
    training_days: list[int], long_day: int, limit: int, week_start: str
) -> list[int]:
    chosen: list[int] = []
    for day in training_days:
        if len(chosen) >= limit:
            break
        if day == long_day:
            continue
        pos = day_sort_key(day, week_start)
        if any(abs(pos - day_sort_key(d, week_start)) <= 1 for d in chosen):
            continue
        chosen.append(day)
    return chosen


def _intensity_type(setup: PlanSetup, phase: str, nth: int) -> str:
    if phase in {"Base", "Recovery", "Taper"} or setup.risk_tolerance == "low":
        return "tempo"
    if setup.risk_tolerance == "high":
        return "threshold"
    return "tempo" if nth % 2 == 0 else "threshold"


def _long_discipline(setup: PlanSetup, week_index: int) -> str:
    if setup.discipline_emphasis in {"run", "bike"}:
        return setup.discipline_emphasis
    return "bike" if week_index % 2 == 0 else "run"


def _build_slots(setup: PlanSetup, week_index: int, phase: str, week_minutes: int) -> list[_Slot]:
    days = sorted(setup.weekly_availability_days, key=lambda d: day_sort_key(d, setup.week_start))
    long_day = _pick_long_day(setup, days)

    target = _target_sessions(setup, len(days))
    fitting = max(0, week_minutes // MIN_SESSION_MIN)
    if fitting < 1:
        raise InfeasiblePlanError(
            f"{week_minutes} weekly minutes cannot hold a {MIN_SESSION_MIN}-minute session", week_index
        )
    if target > fitting:
        logger.info(
            "Relaxing session count to fit weekly minutes",
            extra=log_context(week_index=week_index, requested=target, allowed=fitting),
        )
        target = fitting

    others = [d for d in days if d != long_day]
    training_days = sorted(
        [long_day] + _spread(others, min(len(others), target - 1)),
        key=lambda d: day_sort_key(d, setup.week_start),
    )
    doubles_needed = target - len(training_days)

    intensity_days = _choose_intensity_days(
        training_days, long_day, _intensity_limit(setup, phase), setup.week_start
    )

    rotation = DISCIPLINE_ROTATION[setup.discipline_emphasis]
    slots: list[_Slot] = []
    rot = week_index
    nth_intensity = 0
    for day in training_days:
        if day == long_day:
            discipline = _long_discipline(setup, week_index)
            label = {"bike": "Long ride", "run": "Long run"}.get(discipline, "Long session")
            slots.append(_Slot(day, "long", discipline, "endurance", label))
            continue

        discipline = rotation[rot % len(rotation)]
        rot += 1
        if day in intensity_days:
            if discipline == "swim":
                # Key sessions are never swims.
                discipline = next(d for d in rotation if d != "swim")
            slots.append(_Slot(day, "intensity", discipline, _intensity_type(setup, phase, nth_intensity), "Key session"))
            nth_intensity += 1
        elif discipline == "swim":
            slots.append(_Slot(day, "easy", "swim", "technique", "Technique focus"))
        else:
            slots.append(_Slot(day, "easy", discipline, "endurance", None))

    if doubles_needed > 0:
        # Easy days take the second session first, then key days, the long day last.
        primary_by_day = {s.day: s for s in slots}
        order = sorted(
            training_days,
            key=lambda d: (
                {"easy": 0, "intensity": 1, "long": 2}[primary_by_day[d].role],
                day_sort_key(d, setup.week_start),
            ),
        )
        for day in order[:doubles_needed]:
            primary = primary_by_day[day].discipline
            if setup.discipline_emphasis in {"balanced", "swim"} and primary != "swim":
                slots.append(_Slot(day, "double", "swim", "technique", "Second session (technique)"))
            else:
                second = next((d for d in rotation if d not in {primary, "swim"}), "strength")
                slots.append(_Slot(day, "double", second, "recovery", "Second session (easy)"))

    return slots


def _allocate_minutes(slots: list[_Slot], week_minutes: int) -> None:
    total_weight = sum(SESSION_WEIGHTS[s.weight_key] for s in slots)
    for slot in slots:
        raw = week_minutes * SESSION_WEIGHTS[slot.weight_key] / total_weight
        if slot.role == "long":
            slot.minutes = max(MIN_SESSION_MIN, min(MAX_LONG_SESSION_MIN, int(round(raw / 10.0)) * 10))
        else:
            slot.minutes = max(MIN_SESSION_MIN, min(MAX_SESSION_MIN, int(round(raw / 5.0)) * 5))

    long_slot = next((s for s in slots if s.role == "long"), None)
    non_long = [s for s in slots if s is not long_slot]

    # Trim until the week fits under the cap; the long session goes last.
    guard = 0
    while sum(s.minutes for s in slots) > week_minutes and guard < 1000:
        guard += 1
        reducible = [s for s in non_long if s.minutes - 5 >= MIN_SESSION_MIN]
        if reducible:
            max(reducible, key=lambda s: s.minutes).minutes -= 5
            continue
        if long_slot is not None and long_slot.minutes - 5 >= MIN_SESSION_MIN:
            long_slot.minutes -= 5
            continue
        over = sum(s.minutes for s in slots) - week_minutes
        raise InfeasiblePlanError(f"sessions exceed weekly minutes by {over} at minimum duration")
    if sum(s.minutes for s in slots) > week_minutes:
        raise InfeasiblePlanError("could not fit sessions under the weekly minutes")

    # Top back up towards the weekly target without out-growing the long session.
    ceiling = long_slot.minutes if long_slot is not None else MAX_SESSION_MIN
    guard = 0
    while sum(s.minutes for s in slots) + 5 <= week_minutes and guard < 1000:
        guard += 1
        growable = [s for s in non_long if s.minutes + 5 <= min(MAX_SESSION_MIN, ceiling)]
        if not growable:
            break
        min(growable, key=lambda s: s.minutes).minutes += 5

    if long_slot is not None:
        for slot in non_long:
            if slot.type == "endurance" and slot.minutes > long_slot.minutes:
                slot.minutes = long_slot.minutes


def _build_week(setup: PlanSetup, week_index: int) -> PlanWeek:
    recovery_every = setup.recovery_every_n_weeks or DEFAULT_RECOVERY_EVERY
    phase = _phase_for_week(week_index, setup.weeks_to_event, recovery_every)
    week_minutes = _week_minutes(setup, week_index, phase)

    slots = _build_slots(setup, week_index, phase, week_minutes)
    _allocate_minutes(slots, week_minutes)

    ordered = sorted(
        slots,
        key=lambda s: (day_sort_key(s.day, setup.week_start), 1 if s.role == "double" else 0),
    )
    sessions = [
        PlanSession(
            id=f"w{week_index:02d}s{ordinal:02d}",
            week_index=week_index,
            ordinal=ordinal,
            day_of_week=slot.day,
            discipline=slot.discipline,
            type=slot.type,
            duration_minutes=slot.minutes,
            notes=slot.notes,
        )
        for ordinal, slot in enumerate(ordered)
    ]
    return PlanWeek(week_index=week_index, phase=phase, sessions=sessions)


def generate_plan(setup: Union[PlanSetup, dict[str, Any]], plan_id: str | None = None) -> GeneratedPlan:
    """Generate the full plan for ``setup``; identical input yields an identical plan."""
    if not isinstance(setup, PlanSetup):
        setup = PlanSetup.model_validate(setup)

    plan_id = plan_id or f"plan-{compute_stable_hash(setup)[:12]}"
    weeks = [_build_week(setup, week_index) for week_index in range(setup.weeks_to_event)]
    plan = GeneratedPlan(id=plan_id, setup=setup, weeks=weeks)

    logger.info(
        "Generated plan",
        extra=log_context(
            plan_id=plan_id,
            weeks=len(weeks),
            sessions=sum(len(w.sessions) for w in weeks),
            plan_hash=plan_hash(plan),
        ),
    )
    return plan


def plan_hash(plan: GeneratedPlan) -> str:
    return compute_stable_hash(plan.to_dict())


def session_projection(plan: GeneratedPlan) -> list[tuple]:
    """Field-by-field view used to compare two generation runs."""
    return [s.projection() for s in plan.sessions]
