"""Abstract base for plan suggestion backends.

Every backend (deterministic rules, hosted LLM) implements this interface so
the proposal pipeline can treat them uniformly. Whatever a backend returns is
still passed through the safety rewrite before it is stored.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from plan_builder.services.plan_model import DraftSnapshot, GeneratedPlan
from plan_builder.services.proposals import ProposalDiffResult
from plan_builder.validators import PlanSetup


class PlanBuilderBackend(ABC):
    """Interface that each suggestion backend must implement."""

    NAME: str = ""

    @abstractmethod
    def suggest_plan(self, setup: PlanSetup) -> GeneratedPlan:
        """Return a full plan for ``setup``."""

    @abstractmethod
    def suggest_proposal_diffs(
        self, trigger_types: Sequence[str], draft: DraftSnapshot, current_week_index: int
    ) -> ProposalDiffResult:
        """Suggest an ordered diff responding to ``trigger_types``.

        Args:
            trigger_types: Validated trigger types in fixed order.
            draft: Sessions plus week lock flags as they are now.
            current_week_index: Week containing today; earlier weeks are history.
        """
