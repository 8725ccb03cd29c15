"""Proposal approval: lock re-check, apply and audit.

Approval reads the lock snapshot supplied by the caller, refuses any diff
that touches a locked week or session, and applies the diff to a copy of the
plan. The plan passed in is never mutated.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, replace
from datetime import datetime

from plan_builder.errors import InconsistentSnapshotError, LockConflictError, ProposalStatusError
from plan_builder.logging_config import log_context
from plan_builder.services.diff_ops import (
    AddNote,
    AdjustWeekVolume,
    DiffOp,
    RemoveSession,
    SwapSessionType,
    UpdateSession,
    dump_diff,
    hash_diff,
    op_session_id,
)
from plan_builder.services.plan_generator import plan_hash
from plan_builder.services.plan_model import GeneratedPlan, LockState, PlanWeek
from plan_builder.services.proposals import APPLIED, PROPOSED, REJECTED, PlanChangeProposal
from plan_builder.services.safety import summarize_proposal_action
from plan_builder.services.stable_hash import compute_stable_hash

logger = logging.getLogger(__name__)

ACTOR_TYPES = ("COACH", "SYSTEM")


@dataclass(frozen=True)
class PlanChangeAudit:
    id: str
    proposal_id: str
    plan_id: str
    actor_type: str
    action: str
    diff: tuple[dict, ...]
    summary_text: str
    created_at: datetime
    before_hash: str | None = None
    after_hash: str | None = None


@dataclass(frozen=True)
class ApprovalResult:
    updated_plan: GeneratedPlan
    audit: PlanChangeAudit
    proposal: PlanChangeProposal


def _append_note(existing: str | None, text: str) -> str:
    return text if not existing else f"{existing}\n\n{text}"


def _audit_id(proposal_id: str, action: str, now: datetime) -> str:
    return "aud-" + compute_stable_hash({"proposal_id": proposal_id, "action": action, "at": now})[:16]


def _check_actor(actor_type: str) -> str:
    actor = str(actor_type or "").upper()
    if actor not in ACTOR_TYPES:
        raise ValueError(f"actor_type must be one of {ACTOR_TYPES}, got {actor_type!r}")
    return actor


def _check_targets(proposal: PlanChangeProposal, plan: GeneratedPlan, lock_state: LockState) -> None:
    session_weeks = {s.id: s.week_index for s in plan.sessions}
    known_weeks = {w.week_index for w in plan.weeks}
    for op in proposal.diff:
        session_id = op_session_id(op)
        if session_id is not None:
            if session_id not in session_weeks:
                raise InconsistentSnapshotError(f"Proposal references unknown session {session_id}")
            week = session_weeks[session_id]
        else:
            week = op.week_index
            if week not in known_weeks:
                raise InconsistentSnapshotError(f"Proposal references unknown week {week}")
        if week in lock_state.locked_week_indices:
            raise LockConflictError("week", week)
        if session_id is not None and session_id in lock_state.locked_session_ids:
            raise LockConflictError("session", session_id)
        if isinstance(op, RemoveSession):
            # Later ops in the same diff may not touch the removed session.
            del session_weeks[session_id]


def _apply_op(plan: GeneratedPlan, op: DiffOp, lock_state: LockState) -> None:
    if isinstance(op, UpdateSession):
        session = plan.session(op.session_id)
        if op.patch.type is not None:
            session.type = op.patch.type
        if op.patch.duration_minutes is not None:
            session.duration_minutes = op.patch.duration_minutes
        if op.patch.notes is not None:
            session.notes = op.patch.notes
    elif isinstance(op, SwapSessionType):
        plan.session(op.session_id).type = op.new_type
    elif isinstance(op, AdjustWeekVolume):
        for session in plan.week(op.week_index).sessions:
            if session.id in lock_state.locked_session_ids:
                continue
            session.duration_minutes = max(0, round(session.duration_minutes * (1 + op.pct_delta)))
    elif isinstance(op, RemoveSession):
        week: PlanWeek = plan.week(plan.session(op.session_id).week_index)
        week.sessions = [s for s in week.sessions if s.id != op.session_id]
    elif isinstance(op, AddNote):
        if op.target == "session":
            session = plan.session(op.session_id)
            session.notes = _append_note(session.notes, op.text)
        else:
            week = plan.week(op.week_index)
            week.notes = _append_note(week.notes, op.text)
    else:
        raise TypeError(f"Unsupported diff op: {type(op).__name__}")


def approve_proposal(
    proposal: PlanChangeProposal,
    plan: GeneratedPlan,
    lock_state: LockState,
    actor_type: str,
    now: datetime,
) -> ApprovalResult:
    """Apply ``proposal`` to a copy of ``plan`` under the current ``lock_state``.

    Raises:
        ProposalStatusError: proposal is not PROPOSED
        InconsistentSnapshotError: proposal targets another plan, or sessions/weeks it lacks
        LockConflictError: a targeted week or session is locked
    """
    actor = _check_actor(actor_type)
    if proposal.status != PROPOSED:
        raise ProposalStatusError(proposal.id, proposal.status)
    if proposal.plan_id != plan.id:
        raise InconsistentSnapshotError(f"Proposal {proposal.id} targets plan {proposal.plan_id}, not {plan.id}")
    if hash_diff(list(proposal.diff)) != proposal.diff_hash:
        raise InconsistentSnapshotError(f"Proposal {proposal.id} diff does not match its hash")

    try:
        _check_targets(proposal, plan, lock_state)
    except LockConflictError as exc:
        logger.warning(
            "Proposal blocked by lock",
            extra=log_context(proposal_id=proposal.id, plan_id=plan.id, code=exc.code, target=exc.target),
        )
        raise

    before = plan_hash(plan)
    updated = copy.deepcopy(plan)
    for week in updated.weeks:
        week.locked = week.week_index in lock_state.locked_week_indices
        for session in week.sessions:
            session.locked = session.id in lock_state.locked_session_ids
    for op in proposal.diff:
        _apply_op(updated, op, lock_state)
    after = plan_hash(updated)

    audit = PlanChangeAudit(
        id=_audit_id(proposal.id, "APPLY", now),
        proposal_id=proposal.id,
        plan_id=plan.id,
        actor_type=actor,
        action="APPLY",
        diff=tuple(dump_diff(list(proposal.diff))),
        summary_text=summarize_proposal_action(proposal.diff, proposal.trigger_types, proposal.rationale_text),
        created_at=now,
        before_hash=before,
        after_hash=after,
    )
    applied = replace(proposal, status=APPLIED, decided_at=now)

    logger.info(
        "Applied plan change proposal",
        extra=log_context(
            proposal_id=proposal.id,
            plan_id=plan.id,
            actor_type=actor,
            ops=len(proposal.diff),
            before_hash=before,
            after_hash=after,
        ),
    )
    return ApprovalResult(updated_plan=updated, audit=audit, proposal=applied)


def reject_proposal(
    proposal: PlanChangeProposal, actor_type: str, now: datetime
) -> tuple[PlanChangeProposal, PlanChangeAudit]:
    """Mark a PROPOSED proposal REJECTED; the plan is left as it is."""
    actor = _check_actor(actor_type)
    if proposal.status != PROPOSED:
        raise ProposalStatusError(proposal.id, proposal.status)
    audit = PlanChangeAudit(
        id=_audit_id(proposal.id, "REJECT", now),
        proposal_id=proposal.id,
        plan_id=proposal.plan_id,
        actor_type=actor,
        action="REJECT",
        diff=(),
        summary_text=f"Rejected: {', '.join(proposal.trigger_types) or 'manual change'}.",
        created_at=now,
    )
    logger.info("Rejected plan change proposal", extra=log_context(proposal_id=proposal.id, actor_type=actor))
    return replace(proposal, status=REJECTED, decided_at=now), audit
