"""Rule-based backend: the default, and the fallback for every other backend."""

from __future__ import annotations

from typing import Sequence

from plan_builder.config import AdaptationPolicy
from plan_builder.services.backends.base import PlanBuilderBackend
from plan_builder.services.plan_generator import generate_plan
from plan_builder.services.plan_model import DraftSnapshot, GeneratedPlan
from plan_builder.services.proposals import ProposalDiffResult, generate_proposal
from plan_builder.validators import PlanSetup


class DeterministicBackend(PlanBuilderBackend):
    NAME = "deterministic"

    def __init__(self, policy: AdaptationPolicy | None = None):
        self.policy = policy or AdaptationPolicy()

    def suggest_plan(self, setup: PlanSetup) -> GeneratedPlan:
        return generate_plan(setup)

    def suggest_proposal_diffs(
        self, trigger_types: Sequence[str], draft: DraftSnapshot, current_week_index: int
    ) -> ProposalDiffResult:
        return generate_proposal(trigger_types, draft, current_week_index, self.policy)
