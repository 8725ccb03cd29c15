"""Hosted LLM backend over an OpenAI-compatible responses endpoint.

The model is asked for a JSON object ``{"diff": [...], "rationale": "..."}``.
The diff is validated against the DiffOp union; any failure after the
configured retries falls back to the deterministic backend. Only request
metadata is logged, never prompt or response text.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Sequence

import httpx
from pydantic import ValidationError

from plan_builder.config import Settings
from plan_builder.errors import BackendError
from plan_builder.logging_config import log_context
from plan_builder.services.backends.base import PlanBuilderBackend
from plan_builder.services.backends.deterministic import DeterministicBackend
from plan_builder.services.diff_ops import hash_diff, op_session_id, op_week_index, parse_diff
from plan_builder.services.plan_model import DraftSnapshot, GeneratedPlan
from plan_builder.services.proposals import ProposalDiffResult
from plan_builder.validators import PlanSetup

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You adjust an endurance training plan in response to athlete feedback triggers. "
    "Only touch sessions in weeks at or after the current week, never locked weeks or sessions, "
    "never remove sessions, and prefer small changes. Allowed ops: UPDATE_SESSION, "
    "SWAP_SESSION_TYPE, ADJUST_WEEK_VOLUME, ADD_NOTE."
)

RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


def _extract_output_text(payload: dict[str, Any]) -> str:
    text = payload.get("output_text")
    if isinstance(text, str) and text.strip():
        return text
    for item in payload.get("output") or []:
        for content in (item or {}).get("content") or []:
            text = (content or {}).get("text")
            if isinstance(text, str) and text.strip():
                return text
    return ""


def _draft_payload(trigger_types: Sequence[str], draft: DraftSnapshot, current_week_index: int) -> dict[str, Any]:
    return {
        "trigger_types": list(trigger_types),
        "current_week_index": current_week_index,
        "locked_week_indices": sorted(draft.locked_week_indices),
        "sessions": [
            {
                "id": s.id,
                "week_index": s.week_index,
                "day_of_week": s.day_of_week,
                "discipline": s.discipline,
                "type": s.type,
                "duration_minutes": s.duration_minutes,
                "locked": s.locked,
            }
            for s in draft.sessions
            if s.week_index >= current_week_index
        ],
    }


def _respects_locks(diff: list, draft: DraftSnapshot) -> bool:
    session_weeks = {s.id: s.week_index for s in draft.sessions}
    locked_sessions = {s.id for s in draft.sessions if s.locked}
    for op in diff:
        if op_week_index(op, session_weeks) in draft.locked_week_indices:
            return False
        if op_session_id(op) in locked_sessions:
            return False
    return True


class LlmBackend(PlanBuilderBackend):
    """Suggestion backend calling a hosted model with bounded retries."""

    NAME = "llm"

    def __init__(
        self,
        settings: Settings,
        client: httpx.Client | None = None,
        fallback: PlanBuilderBackend | None = None,
    ):
        self.settings = settings
        # Without an injected client each request goes through httpx.post.
        self.client = client
        self.fallback = fallback or DeterministicBackend(settings.policy)

    def suggest_plan(self, setup: PlanSetup) -> GeneratedPlan:
        # Plan generation stays rule-based; the model only proposes diffs.
        return self.fallback.suggest_plan(setup)

    def suggest_proposal_diffs(
        self, trigger_types: Sequence[str], draft: DraftSnapshot, current_week_index: int
    ) -> ProposalDiffResult:
        if not self.settings.llm_api_key:
            logger.warning("LLM backend has no API key, using deterministic fallback")
            return self.fallback.suggest_proposal_diffs(trigger_types, draft, current_week_index)

        payload = _draft_payload(trigger_types, draft, current_week_index)
        attempts = 1 + max(0, self.settings.llm_retry_count)
        last_error: BackendError | None = None
        for attempt in range(1, attempts + 1):
            try:
                raw = self._request_json(payload)
                diff = parse_diff(raw.get("diff"))
            except ValidationError as exc:
                last_error = BackendError("SCHEMA_VALIDATION_FAILED", f"{exc.error_count()} invalid diff fields", True)
            except BackendError as exc:
                last_error = exc
            else:
                return ProposalDiffResult(
                    diff=diff,
                    diff_hash=hash_diff(diff),
                    rationale_text=str(raw.get("rationale") or ""),
                    respects_locks=_respects_locks(diff, draft),
                )
            logger.warning(
                "LLM proposal attempt failed",
                extra=log_context(
                    attempt=attempt, attempts=attempts, code=last_error.code, retryable=last_error.retryable
                ),
            )
            if not last_error.retryable:
                break

        logger.warning(
            "LLM backend falling back to deterministic proposal",
            extra=log_context(code=last_error.code if last_error else None),
        )
        return self.fallback.suggest_proposal_diffs(trigger_types, draft, current_week_index)

    def _request_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = {
            "model": self.settings.llm_model,
            "input": (
                SYSTEM_PROMPT
                + "\n\n"
                + json.dumps(payload, sort_keys=True)
                + "\n\nReturn ONLY a single JSON object with keys diff and rationale (no markdown, no code fences)."
            ),
            "max_output_tokens": self.settings.llm_max_output_tokens,
        }
        started = time.monotonic()
        try:
            post = self.client.post if self.client is not None else httpx.post
            resp = post(
                self.settings.llm_api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.settings.llm_api_key}"},
                timeout=self.settings.llm_timeout_s,
            )
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise BackendError("TIMEOUT", "LLM request timed out.", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise BackendError(
                "PROVIDER_ERROR", f"LLM provider returned HTTP {status}.", retryable=status in RETRYABLE_STATUS
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendError("NETWORK", "LLM request failed.", retryable=True) from exc

        logger.debug(
            "LLM request completed",
            extra=log_context(
                model=self.settings.llm_model,
                status=resp.status_code,
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
        )
        try:
            body_json = resp.json()
        except ValueError as exc:
            raise BackendError("PROVIDER_ERROR", "LLM provider returned a non-JSON body.", retryable=True) from exc
        text = _extract_output_text(body_json) if isinstance(body_json, dict) else ""
        if not text:
            raise BackendError("PROVIDER_ERROR", "LLM returned no text output.", retryable=True)
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise BackendError("INVALID_JSON", "LLM returned invalid JSON.", retryable=True) from exc
        if not isinstance(data, dict):
            raise BackendError("SCHEMA_VALIDATION_FAILED", "LLM output is not a JSON object.", retryable=True)
        return data
