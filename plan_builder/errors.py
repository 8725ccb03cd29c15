"""Error types raised by the plan-builder engines.

Validation and infeasibility are raised before any state is produced; lock
conflicts and status violations are raised by the apply step and leave the
supplied plan untouched.
"""

from __future__ import annotations


class PlanBuilderError(Exception):
    """Base exception for plan-builder errors."""


class PlanValidationError(PlanBuilderError, ValueError):
    """Raised when engine input is malformed (unknown trigger type, bad window)."""


class InfeasiblePlanError(PlanBuilderError):
    """Raised when no relaxation of the setup yields a schedulable week."""

    def __init__(self, reason: str, week_index: int | None = None) -> None:
        self.reason = reason
        self.week_index = week_index
        where = f" (week {week_index})" if week_index is not None else ""
        super().__init__(f"Plan is infeasible{where}: {reason}")


class LockConflictError(PlanBuilderError):
    """Raised when a proposal targets a week or session that is now locked.

    Attributes:
        scope: "week" or "session"
        target: week index or session id that caused the conflict
    """

    def __init__(self, scope: str, target: int | str) -> None:
        self.scope = scope
        self.target = target
        if scope == "week":
            message = f"Week {target} is locked and cannot be modified."
        else:
            message = f"Session {target} is locked and cannot be edited."
        super().__init__(message)

    @property
    def code(self) -> str:
        return "WEEK_LOCKED" if self.scope == "week" else "SESSION_LOCKED"


class ProposalStatusError(PlanBuilderError):
    """Raised when approving or rejecting a proposal that is no longer PROPOSED."""

    def __init__(self, proposal_id: str, status: str) -> None:
        self.proposal_id = proposal_id
        self.status = status
        super().__init__(f"Proposal {proposal_id} must be PROPOSED (current={status}).")


class InconsistentSnapshotError(PlanBuilderError):
    """Raised when a diff or proposal references state absent from the snapshot."""


class BackendError(PlanBuilderError):
    """Raised by a suggestion backend; ``retryable`` marks transient failures."""

    def __init__(self, code: str, message: str, retryable: bool = False) -> None:
        self.code = code
        self.retryable = retryable
        super().__init__(message)
