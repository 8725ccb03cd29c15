"""Plan snapshot types shared by the generator, proposal, safety and apply engines."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from plan_builder.validators import PlanSetup

DISCIPLINES = ("swim", "bike", "run", "strength", "rest")
SESSION_TYPES = ("endurance", "tempo", "threshold", "technique", "recovery", "strength", "rest")

INTENSITY_TYPES = frozenset({"tempo", "threshold"})

# Higher rank = harder session.
INTENSITY_RANK = {
    "rest": 0,
    "recovery": 1,
    "technique": 2,
    "strength": 2,
    "endurance": 2,
    "tempo": 3,
    "threshold": 4,
}


def is_intensity_type(session_type: str | None) -> bool:
    return str(session_type or "").strip().lower() in INTENSITY_TYPES


def intensity_rank(session_type: str | None) -> int:
    return INTENSITY_RANK.get(str(session_type or "").strip().lower(), 2)


def escalates_intensity(current_type: str | None, new_type: str | None) -> bool:
    return intensity_rank(new_type) > intensity_rank(current_type)


@dataclass
class PlanSession:
    id: str
    week_index: int
    ordinal: int
    day_of_week: int
    discipline: str
    type: str
    duration_minutes: int
    notes: str | None = None
    locked: bool = False

    def projection(self) -> tuple:
        return (
            self.week_index,
            self.ordinal,
            self.day_of_week,
            self.discipline,
            self.type,
            self.duration_minutes,
            self.notes,
        )


@dataclass
class PlanWeek:
    week_index: int
    phase: str
    sessions: list[PlanSession] = field(default_factory=list)
    locked: bool = False
    notes: str | None = None

    @property
    def total_minutes(self) -> int:
        return sum(s.duration_minutes for s in self.sessions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_index": self.week_index,
            "phase": self.phase,
            "locked": self.locked,
            "notes": self.notes,
            "total_minutes": self.total_minutes,
            "sessions": [
                {
                    "id": s.id,
                    "week_index": s.week_index,
                    "ordinal": s.ordinal,
                    "day_of_week": s.day_of_week,
                    "discipline": s.discipline,
                    "type": s.type,
                    "duration_minutes": s.duration_minutes,
                    "notes": s.notes,
                    "locked": s.locked,
                }
                for s in self.sessions
            ],
        }


@dataclass
class GeneratedPlan:
    id: str
    setup: PlanSetup
    weeks: list[PlanWeek] = field(default_factory=list)

    @property
    def sessions(self) -> list[PlanSession]:
        return [s for w in sorted(self.weeks, key=lambda w: w.week_index) for s in w.sessions]

    def week(self, week_index: int) -> PlanWeek | None:
        return next((w for w in self.weeks if w.week_index == week_index), None)

    def session(self, session_id: str) -> PlanSession | None:
        return next((s for s in self.sessions if s.id == session_id), None)

    def locked_week_indices(self) -> set[int]:
        return {w.week_index for w in self.weeks if w.locked}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "setup": self.setup.model_dump(mode="json"),
            "weeks": [w.to_dict() for w in self.weeks],
        }


@dataclass(frozen=True)
class LockState:
    """Caller-supplied lock snapshot, read fresh at approval time."""

    locked_week_indices: frozenset[int] = frozenset()
    locked_session_ids: frozenset[str] = frozenset()

    @classmethod
    def of(cls, weeks: Iterable[int] = (), sessions: Iterable[str] = ()) -> "LockState":
        return cls(frozenset(int(w) for w in weeks), frozenset(str(s) for s in sessions))

    @classmethod
    def from_plan(cls, plan: GeneratedPlan) -> "LockState":
        return cls.of(plan.locked_week_indices(), (s.id for s in plan.sessions if s.locked))


@dataclass(frozen=True)
class DraftSnapshot:
    """Week lock flags plus sessions; the view the proposal engines work from."""

    weeks: tuple[tuple[int, bool], ...]
    sessions: tuple[PlanSession, ...]

    @classmethod
    def from_plan(cls, plan: GeneratedPlan, lock_state: LockState | None = None) -> "DraftSnapshot":
        """Snapshot ``plan``; when ``lock_state`` is given its flags replace the plan's own."""
        if lock_state is None:
            return cls(
                weeks=tuple((w.week_index, w.locked) for w in plan.weeks),
                sessions=tuple(plan.sessions),
            )
        return cls(
            weeks=tuple((w.week_index, w.week_index in lock_state.locked_week_indices) for w in plan.weeks),
            sessions=tuple(
                replace(s, locked=s.id in lock_state.locked_session_ids) for s in plan.sessions
            ),
        )

    @property
    def locked_week_indices(self) -> frozenset[int]:
        return frozenset(idx for idx, locked in self.weeks if locked)

    def week_locked(self, week_index: int) -> bool:
        return dict(self.weeks).get(week_index, False)
