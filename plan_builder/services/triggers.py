"""Adaptation trigger derivation from athlete feedback and completed activities.

Scans a time window ending at ``now`` and emits typed triggers, each carrying
the ids of the records that justified it:
- SORENESS: soreness feedback, or a pain-flagged activity not already covered
  by soreness feedback on the same day
- TOO_HARD: a cluster (2+) of "too hard" feel ratings or high RPE values
- MISSED_KEY: skipped/partial rate on key sessions above the policy rate, given enough chances
- HIGH_COMPLIANCE: strong completion over an adequate sample, no negative flags
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from plan_builder.config import AdaptationPolicy
from plan_builder.errors import PlanValidationError
from plan_builder.logging_config import log_context
from plan_builder.services.plan_model import is_intensity_type
from plan_builder.services.stable_hash import compute_stable_hash
from plan_builder.validators import ActivityRecord, FeedbackRecord

logger = logging.getLogger(__name__)

TRIGGER_TYPES = ("SORENESS", "TOO_HARD", "MISSED_KEY", "HIGH_COMPLIANCE")
PROTECTIVE_TRIGGERS = frozenset({"SORENESS", "TOO_HARD", "MISSED_KEY"})

MIN_WINDOW_DAYS = 1
MAX_WINDOW_DAYS = 60


@dataclass(frozen=True)
class EvidenceRef:
    kind: str  # "feedback" | "activity"
    id: str


@dataclass(frozen=True)
class AdaptationTrigger:
    id: str
    trigger_type: str
    window_start: datetime
    window_end: datetime
    evidence: tuple[EvidenceRef, ...]
    generated_at: datetime
    summary: dict[str, Any] = field(default_factory=dict)

    @property
    def evidence_ids(self) -> list[str]:
        return [e.id for e in self.evidence]


def parse_trigger_types(values: Iterable[str]) -> list[str]:
    """Validate, de-duplicate and order trigger types; unknown values raise."""
    seen: set[str] = set()
    for value in values:
        key = str(value or "").strip().upper()
        if key not in TRIGGER_TYPES:
            raise PlanValidationError(f"Unrecognized trigger type: {value!r}")
        seen.add(key)
    return [t for t in TRIGGER_TYPES if t in seen]


def has_protective_trigger(trigger_types: Iterable[str]) -> bool:
    return any(t in PROTECTIVE_TRIGGERS for t in trigger_types)


def is_key_session(record: FeedbackRecord, policy: AdaptationPolicy) -> bool:
    long_session = record.session_duration_minutes >= policy.key_session_min_minutes or "long" in (
        record.session_notes or ""
    ).lower()
    return is_intensity_type(record.session_type) or long_session


def _make_trigger(
    trigger_type: str,
    window_start: datetime,
    now: datetime,
    evidence: list[EvidenceRef],
    summary: dict[str, Any],
) -> AdaptationTrigger:
    trigger_id = "trg-" + compute_stable_hash(
        {
            "type": trigger_type,
            "window_start": window_start,
            "window_end": now,
            "evidence": [(e.kind, e.id) for e in evidence],
        }
    )[:16]
    return AdaptationTrigger(
        id=trigger_id,
        trigger_type=trigger_type,
        window_start=window_start,
        window_end=now,
        evidence=tuple(evidence),
        generated_at=now,
        summary=summary,
    )


def derive_triggers(
    now: datetime,
    window_days: int,
    feedback: Sequence[FeedbackRecord],
    completed_activities: Sequence[ActivityRecord] = (),
    policy: AdaptationPolicy | None = None,
) -> list[AdaptationTrigger]:
    """Derive adaptation triggers from records inside ``[now - window_days, now]``."""
    policy = policy or AdaptationPolicy()
    if not MIN_WINDOW_DAYS <= window_days <= MAX_WINDOW_DAYS:
        raise PlanValidationError(f"window_days must be between {MIN_WINDOW_DAYS} and {MAX_WINDOW_DAYS}")

    window_start = now - timedelta(days=window_days)
    fb = sorted(
        (f for f in feedback if window_start <= f.created_at <= now),
        key=lambda f: (f.created_at, f.id),
    )
    acts = sorted(
        (a for a in completed_activities if window_start <= a.start_time <= now),
        key=lambda a: (a.start_time, a.id),
    )
    triggers: list[AdaptationTrigger] = []

    # SORENESS
    sore_start = now - timedelta(days=min(window_days, policy.soreness_window_days))
    sore_fb = [f for f in fb if f.soreness_flag and f.created_at >= sore_start]
    acknowledged_days = {f.created_at.date() for f in sore_fb}
    pain_acts = [
        a for a in acts if a.pain_flag and a.start_time >= sore_start and a.start_time.date() not in acknowledged_days
    ]
    if sore_fb or pain_acts:
        evidence = [EvidenceRef("feedback", f.id) for f in sore_fb] + [EvidenceRef("activity", a.id) for a in pain_acts]
        triggers.append(
            _make_trigger(
                "SORENESS",
                sore_start,
                now,
                evidence,
                {
                    "rule": "SORENESS if soreness feedback or unacknowledged pain flag in window",
                    "soreness_count": len(sore_fb),
                    "pain_flag_count": len(pain_acts),
                },
            )
        )

    # TOO_HARD
    effort_start = now - timedelta(days=min(window_days, policy.effort_window_days))
    hard_fb = [
        f
        for f in fb
        if f.created_at >= effort_start
        and (f.feel == "TOO_HARD" or (f.rpe is not None and f.rpe >= policy.too_hard_rpe))
    ]
    hard_acts = [a for a in acts if a.start_time >= effort_start and a.rpe is not None and a.rpe >= policy.too_hard_rpe]
    if len(hard_fb) + len(hard_acts) >= policy.too_hard_min_signals:
        evidence = [EvidenceRef("feedback", f.id) for f in hard_fb] + [EvidenceRef("activity", a.id) for a in hard_acts]
        triggers.append(
            _make_trigger(
                "TOO_HARD",
                effort_start,
                now,
                evidence,
                {
                    "rule": f"TOO_HARD if >= {policy.too_hard_min_signals} too-hard or RPE >= {policy.too_hard_rpe} records",
                    "too_hard_count": sum(1 for f in hard_fb if f.feel == "TOO_HARD"),
                    "high_rpe_count": len(hard_fb) + len(hard_acts) - sum(1 for f in hard_fb if f.feel == "TOO_HARD"),
                },
            )
        )

    # MISSED_KEY
    key_fb = [f for f in fb if is_key_session(f, policy)]
    missed = [f for f in key_fb if f.completed_status in {"SKIPPED", "PARTIAL"}]
    if len(key_fb) >= policy.missed_key_min_opportunities and missed:
        missed_rate = len(missed) / len(key_fb)
        if missed_rate > policy.missed_key_rate:
            triggers.append(
                _make_trigger(
                    "MISSED_KEY",
                    window_start,
                    now,
                    [EvidenceRef("feedback", f.id) for f in missed],
                    {
                        "rule": f"MISSED_KEY if missed rate > {policy.missed_key_rate} over >= "
                        f"{policy.missed_key_min_opportunities} key sessions",
                        "key_opportunities": len(key_fb),
                        "missed_count": len(missed),
                        "missed_rate": round(missed_rate, 3),
                    },
                )
            )

    # HIGH_COMPLIANCE
    negative = any(t.trigger_type in {"SORENESS", "TOO_HARD"} for t in triggers)
    completed = [f for f in fb if f.completed_status in {"DONE", "PARTIAL"}]
    if not negative and fb and len(completed) >= policy.high_compliance_min_sample:
        done = sum(1 for f in completed if f.completed_status == "DONE")
        partial = len(completed) - done
        compliance = (done + 0.5 * partial) / len(fb)
        if compliance >= policy.high_compliance_rate:
            triggers.append(
                _make_trigger(
                    "HIGH_COMPLIANCE",
                    window_start,
                    now,
                    [EvidenceRef("feedback", f.id) for f in completed],
                    {
                        "rule": f"HIGH_COMPLIANCE if completion >= {policy.high_compliance_rate} over >= "
                        f"{policy.high_compliance_min_sample} completed records, no SORENESS/TOO_HARD",
                        "total_feedback_count": len(fb),
                        "done_count": done,
                        "partial_count": partial,
                        "compliance": round(compliance, 3),
                    },
                )
            )

    logger.debug(
        "Derived adaptation triggers",
        extra=log_context(
            window_days=window_days,
            feedback=len(fb),
            activities=len(acts),
            triggers=[t.trigger_type for t in triggers],
        ),
    )
    return triggers


def dedupe_triggers(
    new: Sequence[AdaptationTrigger], existing: Sequence[AdaptationTrigger]
) -> list[AdaptationTrigger]:
    """Drop triggers whose (type, window) pair has already been recorded."""
    seen = {(t.trigger_type, t.window_start, t.window_end) for t in existing}
    return [t for t in new if (t.trigger_type, t.window_start, t.window_end) not in seen]
