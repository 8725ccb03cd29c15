"""Trigger-driven plan change proposals.

Maps a set of trigger types onto an ordered diff against the next training
week using a fixed policy:
- SORENESS: next unlocked intensity session becomes recovery; next week -10%
- TOO_HARD: next unlocked intensity session drops one intensity step
- MISSED_KEY: next week -15%; one intensity session next week becomes endurance
- HIGH_COMPLIANCE: +10 minutes on next week's longest unlocked session
  (or +5% week volume when no session is available)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Iterable, Optional, Sequence, Union

from plan_builder.config import AdaptationPolicy
from plan_builder.logging_config import log_context
from plan_builder.services.diff_ops import (
    AddNote,
    AdjustWeekVolume,
    DiffOp,
    SessionPatch,
    SwapSessionType,
    UpdateSession,
    hash_diff,
)
from plan_builder.services.plan_model import (
    DraftSnapshot,
    GeneratedPlan,
    LockState,
    PlanSession,
    is_intensity_type,
)
from plan_builder.services.safety import rewrite_for_safe_apply, week_index_on
from plan_builder.services.stable_hash import compute_stable_hash
from plan_builder.services.triggers import AdaptationTrigger, parse_trigger_types

if TYPE_CHECKING:
    from plan_builder.services.backends.base import PlanBuilderBackend

logger = logging.getLogger(__name__)

PROPOSED = "PROPOSED"
APPLIED = "APPLIED"
REJECTED = "REJECTED"


@dataclass(frozen=True)
class ProposalDiffResult:
    diff: list[DiffOp]
    diff_hash: str
    rationale_text: str
    respects_locks: bool


@dataclass(frozen=True)
class PlanChangeProposal:
    id: str
    plan_id: str
    trigger_ids: tuple[str, ...]
    trigger_types: tuple[str, ...]
    diff: tuple[DiffOp, ...]
    diff_hash: str
    created_at: datetime
    status: str = PROPOSED
    rationale_text: str = ""
    respects_locks: bool = True
    dropped_ops: int = 0
    decided_at: Optional[datetime] = None


def _pct_text(pct_delta: float) -> str:
    pct = int(round(pct_delta * 100))
    return f"+{pct}%" if pct > 0 else f"{pct}%"


def downgrade_intensity_type(current_type: str) -> str:
    t = str(current_type or "").lower()
    if t == "threshold":
        return "tempo"
    return "endurance"


class _DiffBuilder:
    def __init__(self, draft: DraftSnapshot, current_week: int, policy: AdaptationPolicy):
        self.draft = draft
        self.policy = policy
        self.next_week = current_week + 1
        self.next_week_locked = draft.week_locked(self.next_week)
        self.sessions = sorted(
            (s for s in draft.sessions if s.week_index >= current_week),
            key=lambda s: (s.week_index, s.ordinal, s.day_of_week),
        )
        self.ops: list[DiffOp] = []
        self.rationale: list[str] = []
        self.respects_locks = True
        self.claimed: set[str] = set()

    def _unlocked(self, session: PlanSession) -> bool:
        return not session.locked and not self.draft.week_locked(session.week_index)

    def next_unlocked_intensity(self, week_index: int | None = None) -> PlanSession | None:
        for s in self.sessions:
            if week_index is not None and s.week_index != week_index:
                continue
            if is_intensity_type(s.type) and self._unlocked(s) and s.id not in self.claimed:
                return s
        return None

    def blocked(self, reason: str) -> None:
        self.respects_locks = False
        self.rationale.append(f"Blocked by lock: {reason}")

    def week_volume(self, pct_delta: float, because: str) -> None:
        if self.next_week_locked:
            self.blocked(f"week_index={self.next_week} is locked (cannot adjust week volume).")
            return
        self.ops.append(AdjustWeekVolume(week_index=self.next_week, pct_delta=pct_delta))
        self.ops.append(
            AddNote(target="week", week_index=self.next_week, text=f"Volume adjustment {_pct_text(pct_delta)} ({because}).")
        )
        self.rationale.append(f"{because}: adjust next week volume {_pct_text(pct_delta)}.")

    def swap(self, session: PlanSession, new_type: str, note: str) -> None:
        self.claimed.add(session.id)
        self.ops.append(SwapSessionType(session_id=session.id, new_type=new_type))
        self.ops.append(AddNote(target="session", session_id=session.id, text=note))

    def soreness(self) -> None:
        self.rationale.append("Trigger SORENESS: soreness reported recently.")
        target = self.next_unlocked_intensity()
        if target is None:
            self.blocked("no unlocked intensity session found to convert for SORENESS.")
        else:
            self.swap(target, "recovery", "SORENESS: converted to recovery.")
        self.week_volume(self.policy.soreness_volume_pct, "SORENESS")

    def too_hard(self) -> None:
        self.rationale.append("Trigger TOO_HARD: multiple sessions felt too hard.")
        target = self.next_unlocked_intensity()
        if target is None:
            self.blocked("no unlocked intensity session found to downgrade for TOO_HARD.")
            return
        new_type = downgrade_intensity_type(target.type)
        self.swap(target, new_type, f"TOO_HARD: downgraded intensity ({target.type} -> {new_type}).")

    def missed_key(self) -> None:
        self.rationale.append("Trigger MISSED_KEY: multiple key sessions were skipped.")
        self.week_volume(self.policy.missed_key_volume_pct, "MISSED_KEY")
        if self.next_week_locked:
            self.blocked(f"week_index={self.next_week} is locked (cannot replace intensity session).")
            return
        target = self.next_unlocked_intensity(self.next_week)
        if target is None:
            self.blocked("no unlocked intensity session found in next week to replace for MISSED_KEY.")
            return
        self.swap(target, "endurance", "MISSED_KEY: replaced an intensity session with endurance.")

    def high_compliance(self) -> None:
        self.rationale.append("Trigger HIGH_COMPLIANCE: strong completion with no negative flags.")
        if self.next_week_locked:
            self.blocked(f"week_index={self.next_week} is locked (cannot apply progression).")
            return
        candidates = sorted(
            (s for s in self.sessions if s.week_index == self.next_week and self._unlocked(s)),
            key=lambda s: (-s.duration_minutes, s.ordinal),
        )
        if not candidates:
            self.week_volume(self.policy.high_compliance_volume_pct, "HIGH_COMPLIANCE")
            return
        target = candidates[0]
        bump = self.policy.high_compliance_bump_minutes
        self.ops.append(
            UpdateSession(session_id=target.id, patch=SessionPatch(duration_minutes=target.duration_minutes + bump))
        )
        self.ops.append(
            AddNote(target="session", session_id=target.id, text=f"HIGH_COMPLIANCE: small progression (+{bump} minutes).")
        )
        self.rationale.append(f"HIGH_COMPLIANCE: +{bump} minutes to the longest session next week.")


def generate_proposal(
    trigger_types: Iterable[str],
    draft: Union[DraftSnapshot, GeneratedPlan],
    current_week_index: int = 0,
    policy: AdaptationPolicy | None = None,
) -> ProposalDiffResult:
    """Build the diff for ``trigger_types`` against ``draft``; deterministic for identical input."""
    policy = policy or AdaptationPolicy()
    types = parse_trigger_types(trigger_types)
    if isinstance(draft, GeneratedPlan):
        draft = DraftSnapshot.from_plan(draft)

    builder = _DiffBuilder(draft, current_week_index, policy)
    handlers = {
        "SORENESS": builder.soreness,
        "TOO_HARD": builder.too_hard,
        "MISSED_KEY": builder.missed_key,
        "HIGH_COMPLIANCE": builder.high_compliance,
    }
    for trigger_type in types:
        handlers[trigger_type]()

    diff = builder.ops
    return ProposalDiffResult(
        diff=diff,
        diff_hash=hash_diff(diff),
        rationale_text="\n".join(builder.rationale),
        respects_locks=builder.respects_locks,
    )


def build_change_proposal(
    plan: GeneratedPlan,
    triggers: Sequence[AdaptationTrigger],
    now: datetime,
    backend: "PlanBuilderBackend | None" = None,
    lock_state: LockState | None = None,
    today: date | None = None,
    policy: AdaptationPolicy | None = None,
) -> PlanChangeProposal:
    """Suggest a diff for ``triggers``, run the mandatory safety rewrite and wrap it as PROPOSED."""
    policy = policy or AdaptationPolicy()
    today = today or now.date()
    trigger_types = parse_trigger_types(t.trigger_type for t in triggers)
    trigger_ids = tuple(sorted(t.id for t in triggers))
    lock_state = lock_state or LockState.from_plan(plan)

    draft = DraftSnapshot.from_plan(plan, lock_state)
    week_now = week_index_on(plan.setup, today)
    if backend is None:
        suggested = generate_proposal(trigger_types, draft, week_now, policy)
    else:
        suggested = backend.suggest_proposal_diffs(trigger_types, draft, week_now)

    safe = rewrite_for_safe_apply(
        plan.setup,
        draft.sessions,
        suggested.diff,
        trigger_types,
        locked_weeks=draft.locked_week_indices,
        today=today,
        policy=policy,
    )
    diff_hash = hash_diff(safe.diff)
    proposal_id = "prop-" + compute_stable_hash(
        {"plan_id": plan.id, "trigger_ids": list(trigger_ids), "diff_hash": diff_hash}
    )[:16]

    logger.info(
        "Built plan change proposal",
        extra=log_context(
            proposal_id=proposal_id,
            plan_id=plan.id,
            trigger_types=trigger_types,
            ops=len(safe.diff),
            dropped_ops=safe.dropped_ops,
        ),
    )
    return PlanChangeProposal(
        id=proposal_id,
        plan_id=plan.id,
        trigger_ids=trigger_ids,
        trigger_types=tuple(trigger_types),
        diff=tuple(safe.diff),
        diff_hash=diff_hash,
        created_at=now,
        rationale_text=suggested.rationale_text,
        respects_locks=suggested.respects_locks,
        dropped_ops=safe.dropped_ops,
    )
