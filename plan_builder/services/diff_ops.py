"""Plan diff operations as a closed, discriminated union.

Every engine that consumes a diff matches on the concrete op class and
raises TypeError on anything else, so an unknown op is never skipped.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from plan_builder.services.stable_hash import compute_stable_hash


class _Op(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SessionPatch(_Op):
    type: Optional[str] = Field(default=None, min_length=1)
    duration_minutes: Optional[int] = Field(default=None, ge=0, le=10_000)
    notes: Optional[str] = Field(default=None, max_length=10_000)

    @property
    def is_empty(self) -> bool:
        return self.type is None and self.duration_minutes is None and self.notes is None


class UpdateSession(_Op):
    op: Literal["UPDATE_SESSION"] = "UPDATE_SESSION"
    session_id: str = Field(min_length=1)
    patch: SessionPatch


class SwapSessionType(_Op):
    op: Literal["SWAP_SESSION_TYPE"] = "SWAP_SESSION_TYPE"
    session_id: str = Field(min_length=1)
    new_type: str = Field(min_length=1)


class AdjustWeekVolume(_Op):
    op: Literal["ADJUST_WEEK_VOLUME"] = "ADJUST_WEEK_VOLUME"
    week_index: int = Field(ge=0, le=52)
    pct_delta: float = Field(ge=-0.9, le=1.0)


class RemoveSession(_Op):
    op: Literal["REMOVE_SESSION"] = "REMOVE_SESSION"
    session_id: str = Field(min_length=1)


class AddNote(_Op):
    op: Literal["ADD_NOTE"] = "ADD_NOTE"
    target: Literal["session", "week"]
    session_id: Optional[str] = None
    week_index: Optional[int] = Field(default=None, ge=0, le=52)
    text: str = Field(min_length=1, max_length=10_000)

    @model_validator(mode="after")
    def target_reference(self):
        if self.target == "session" and not self.session_id:
            raise ValueError("session notes require session_id")
        if self.target == "week" and self.week_index is None:
            raise ValueError("week notes require week_index")
        if not self.text.strip():
            raise ValueError("note text must not be blank")
        return self


DiffOp = Annotated[
    Union[UpdateSession, SwapSessionType, AdjustWeekVolume, RemoveSession, AddNote],
    Field(discriminator="op"),
]

_DIFF_ADAPTER = TypeAdapter(list[DiffOp])


def parse_diff(raw: Any) -> list[DiffOp]:
    """Validate a JSON-like list into typed diff ops (raises pydantic.ValidationError)."""
    return _DIFF_ADAPTER.validate_python(raw)


def dump_diff(diff: list[DiffOp]) -> list[dict[str, Any]]:
    return [op.model_dump(mode="json", exclude_none=True) for op in diff]


def hash_diff(diff: list[DiffOp]) -> str:
    return compute_stable_hash(dump_diff(diff))


def op_week_index(op: DiffOp, session_weeks: dict[str, int]) -> int | None:
    """Week an op touches, resolving session targets through ``session_weeks``."""
    if isinstance(op, AdjustWeekVolume):
        return op.week_index
    if isinstance(op, AddNote) and op.target == "week":
        return op.week_index
    session_id = op_session_id(op)
    return session_weeks.get(session_id) if session_id is not None else None


def op_session_id(op: DiffOp) -> str | None:
    if isinstance(op, (UpdateSession, SwapSessionType, RemoveSession)):
        return op.session_id
    if isinstance(op, AddNote) and op.target == "session":
        return op.session_id
    return None
