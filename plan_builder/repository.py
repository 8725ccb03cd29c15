"""SQLAlchemy persistence for plans, triggers, proposals and audits.

Functions take an open ``Session`` and never commit; callers wrap them in
``db.session_scope()`` so each public operation is a single transaction.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from plan_builder import models
from plan_builder.errors import InconsistentSnapshotError
from plan_builder.logging_config import log_context
from plan_builder.services.apply import ApprovalResult, PlanChangeAudit, approve_proposal, reject_proposal
from plan_builder.services.diff_ops import dump_diff, parse_diff
from plan_builder.services.plan_model import GeneratedPlan, LockState, PlanSession, PlanWeek
from plan_builder.services.proposals import PlanChangeProposal
from plan_builder.services.triggers import AdaptationTrigger, EvidenceRef, dedupe_triggers
from plan_builder.validators import PlanSetup

logger = logging.getLogger(__name__)


# -- Plans --


def save_plan(db: Session, plan: GeneratedPlan) -> None:
    """Insert or fully replace ``plan`` with its weeks and sessions."""
    row = db.get(models.Plan, plan.id)
    setup_json = plan.setup.model_dump(mode="json")
    if row is None:
        db.add(models.Plan(id=plan.id, setup_json=setup_json))
    else:
        row.setup_json = setup_json
        row.updated_at = dt.datetime.utcnow()
    db.execute(delete(models.PlanSession).where(models.PlanSession.plan_id == plan.id))
    db.execute(delete(models.PlanWeek).where(models.PlanWeek.plan_id == plan.id))
    for week in plan.weeks:
        db.add(
            models.PlanWeek(
                plan_id=plan.id,
                week_index=week.week_index,
                phase=week.phase,
                notes=week.notes,
                is_locked=week.locked,
            )
        )
        for s in week.sessions:
            db.add(
                models.PlanSession(
                    plan_id=plan.id,
                    session_id=s.id,
                    week_index=s.week_index,
                    ordinal=s.ordinal,
                    day_of_week=s.day_of_week,
                    discipline=s.discipline,
                    session_type=s.type,
                    duration_minutes=s.duration_minutes,
                    notes=s.notes,
                    is_locked=s.locked,
                )
            )
    db.flush()


def load_plan(db: Session, plan_id: str, for_update: bool = False) -> GeneratedPlan | None:
    stmt = select(models.Plan).where(models.Plan.id == plan_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = db.scalars(stmt).first()
    if row is None:
        return None

    week_rows = db.scalars(
        select(models.PlanWeek).where(models.PlanWeek.plan_id == plan_id).order_by(models.PlanWeek.week_index)
    ).all()
    session_rows = db.scalars(
        select(models.PlanSession)
        .where(models.PlanSession.plan_id == plan_id)
        .order_by(models.PlanSession.week_index, models.PlanSession.ordinal)
    ).all()

    weeks = {
        w.week_index: PlanWeek(week_index=w.week_index, phase=w.phase, locked=w.is_locked, notes=w.notes)
        for w in week_rows
    }
    for s in session_rows:
        weeks[s.week_index].sessions.append(
            PlanSession(
                id=s.session_id,
                week_index=s.week_index,
                ordinal=s.ordinal,
                day_of_week=s.day_of_week,
                discipline=s.discipline,
                type=s.session_type,
                duration_minutes=s.duration_minutes,
                notes=s.notes,
                locked=s.is_locked,
            )
        )
    return GeneratedPlan(
        id=row.id,
        setup=PlanSetup.model_validate(row.setup_json),
        weeks=[weeks[idx] for idx in sorted(weeks)],
    )


def load_lock_state(db: Session, plan_id: str) -> LockState:
    weeks = db.scalars(
        select(models.PlanWeek.week_index).where(
            models.PlanWeek.plan_id == plan_id, models.PlanWeek.is_locked.is_(True)
        )
    ).all()
    sessions = db.scalars(
        select(models.PlanSession.session_id).where(
            models.PlanSession.plan_id == plan_id, models.PlanSession.is_locked.is_(True)
        )
    ).all()
    return LockState.of(weeks, sessions)


def set_week_lock(db: Session, plan_id: str, week_index: int, locked: bool = True) -> None:
    row = db.scalars(
        select(models.PlanWeek).where(models.PlanWeek.plan_id == plan_id, models.PlanWeek.week_index == week_index)
    ).first()
    if row is None:
        raise InconsistentSnapshotError(f"Plan {plan_id} has no week {week_index}")
    row.is_locked = locked
    db.flush()


def set_session_lock(db: Session, plan_id: str, session_id: str, locked: bool = True) -> None:
    row = db.scalars(
        select(models.PlanSession).where(
            models.PlanSession.plan_id == plan_id, models.PlanSession.session_id == session_id
        )
    ).first()
    if row is None:
        raise InconsistentSnapshotError(f"Plan {plan_id} has no session {session_id}")
    row.is_locked = locked
    db.flush()


# -- Triggers --


def _trigger_from_row(row: models.AdaptationTrigger) -> AdaptationTrigger:
    return AdaptationTrigger(
        id=row.id,
        trigger_type=row.trigger_type,
        window_start=row.window_start,
        window_end=row.window_end,
        evidence=tuple(EvidenceRef(e["kind"], e["id"]) for e in row.evidence_json),
        generated_at=row.generated_at,
        summary=dict(row.summary_json or {}),
    )


def load_triggers(db: Session, plan_id: str) -> list[AdaptationTrigger]:
    rows = db.scalars(
        select(models.AdaptationTrigger)
        .where(models.AdaptationTrigger.plan_id == plan_id)
        .order_by(models.AdaptationTrigger.generated_at, models.AdaptationTrigger.id)
    ).all()
    return [_trigger_from_row(r) for r in rows]


def save_triggers(db: Session, plan_id: str, triggers: Sequence[AdaptationTrigger]) -> list[AdaptationTrigger]:
    """Store triggers not already recorded for the same type and window; return the stored ones."""
    fresh = dedupe_triggers(triggers, load_triggers(db, plan_id))
    for t in fresh:
        db.add(
            models.AdaptationTrigger(
                id=t.id,
                plan_id=plan_id,
                trigger_type=t.trigger_type,
                window_start=t.window_start,
                window_end=t.window_end,
                evidence_json=[{"kind": e.kind, "id": e.id} for e in t.evidence],
                summary_json=dict(t.summary),
                generated_at=t.generated_at,
            )
        )
    db.flush()
    if len(fresh) != len(triggers):
        logger.debug(
            "Skipped duplicate triggers",
            extra=log_context(plan_id=plan_id, skipped=len(triggers) - len(fresh)),
        )
    return fresh


# -- Proposals and audits --


def save_proposal(db: Session, proposal: PlanChangeProposal) -> None:
    row = db.get(models.PlanChangeProposal, proposal.id)
    if row is None:
        db.add(
            models.PlanChangeProposal(
                id=proposal.id,
                plan_id=proposal.plan_id,
                status=proposal.status,
                trigger_ids=list(proposal.trigger_ids),
                trigger_types=list(proposal.trigger_types),
                diff_json=dump_diff(list(proposal.diff)),
                diff_hash=proposal.diff_hash,
                rationale_text=proposal.rationale_text,
                respects_locks=proposal.respects_locks,
                dropped_ops=proposal.dropped_ops,
                created_at=proposal.created_at,
                decided_at=proposal.decided_at,
            )
        )
    else:
        # Content is write-once; only the decision moves.
        row.status = proposal.status
        row.decided_at = proposal.decided_at
    db.flush()


def load_proposal(db: Session, proposal_id: str, for_update: bool = False) -> PlanChangeProposal | None:
    stmt = select(models.PlanChangeProposal).where(models.PlanChangeProposal.id == proposal_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = db.scalars(stmt).first()
    if row is None:
        return None
    return PlanChangeProposal(
        id=row.id,
        plan_id=row.plan_id,
        trigger_ids=tuple(row.trigger_ids),
        trigger_types=tuple(row.trigger_types),
        diff=tuple(parse_diff(row.diff_json)),
        diff_hash=row.diff_hash,
        created_at=row.created_at,
        status=row.status,
        rationale_text=row.rationale_text,
        respects_locks=row.respects_locks,
        dropped_ops=row.dropped_ops,
        decided_at=row.decided_at,
    )


def save_audit(db: Session, audit: PlanChangeAudit) -> None:
    db.add(
        models.PlanChangeAudit(
            id=audit.id,
            proposal_id=audit.proposal_id,
            plan_id=audit.plan_id,
            actor_type=audit.actor_type,
            action=audit.action,
            diff_json=list(audit.diff),
            summary_text=audit.summary_text,
            before_hash=audit.before_hash,
            after_hash=audit.after_hash,
            created_at=audit.created_at,
        )
    )
    db.flush()


def list_audits(db: Session, plan_id: str) -> list[models.PlanChangeAudit]:
    return list(
        db.scalars(
            select(models.PlanChangeAudit)
            .where(models.PlanChangeAudit.plan_id == plan_id)
            .order_by(models.PlanChangeAudit.created_at)
        ).all()
    )


def approve_and_persist(db: Session, proposal_id: str, actor_type: str, now: dt.datetime) -> ApprovalResult:
    """Lock the plan row, re-read locks, apply the proposal and write plan, proposal and audit.

    Any error leaves the transaction to be rolled back by the caller's scope.
    """
    proposal = load_proposal(db, proposal_id, for_update=True)
    if proposal is None:
        raise InconsistentSnapshotError(f"Unknown proposal {proposal_id}")
    plan = load_plan(db, proposal.plan_id, for_update=True)
    if plan is None:
        raise InconsistentSnapshotError(f"Unknown plan {proposal.plan_id}")

    result = approve_proposal(proposal, plan, load_lock_state(db, plan.id), actor_type, now)
    save_plan(db, result.updated_plan)
    save_proposal(db, result.proposal)
    save_audit(db, result.audit)
    return result


def reject_and_persist(db: Session, proposal_id: str, actor_type: str, now: dt.datetime) -> PlanChangeProposal:
    proposal = load_proposal(db, proposal_id, for_update=True)
    if proposal is None:
        raise InconsistentSnapshotError(f"Unknown proposal {proposal_id}")
    rejected, audit = reject_proposal(proposal, actor_type, now)
    save_proposal(db, rejected)
    save_audit(db, audit)
    return rejected
