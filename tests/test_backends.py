"""Tests for suggestion backends (deterministic and hosted LLM)."""

from __future__ import annotations

import json
from datetime import date

import httpx

from plan_builder.config import Settings
from plan_builder.services.backends.deterministic import DeterministicBackend
from plan_builder.services.backends.factory import get_backend
from plan_builder.services.backends.llm import LlmBackend, _extract_output_text
from plan_builder.services.plan_generator import generate_plan, plan_hash
from plan_builder.services.plan_model import DraftSnapshot, LockState
from plan_builder.services.proposals import generate_proposal
from plan_builder.validators import PlanSetup

SETUP = PlanSetup(
    event_date=date(2026, 4, 25),
    start_date=date(2026, 3, 2),
    weeks_to_event=8,
    weekly_availability_days=["Mon", "Tue", "Wed", "Fri", "Sat"],
    weekly_availability_minutes=360,
    long_session_day="Sat",
)


def _settings(**overrides) -> Settings:
    defaults = {
        "database_url": "sqlite:///:memory:",
        "ai_mode": "llm",
        "llm_api_url": "https://llm.test/v1/responses",
        "llm_api_key": "test-key",
        "llm_retry_count": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)


def _draft(**lock_kwargs) -> DraftSnapshot:
    return DraftSnapshot.from_plan(generate_plan(SETUP), LockState.of(**lock_kwargs))


def _llm_response(diff, rationale="Lighter week after soreness.") -> httpx.Response:
    return httpx.Response(200, json={"output_text": json.dumps({"diff": diff, "rationale": rationale})})


def _backend(handler, **settings_overrides):
    calls = []

    def record(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return handler(request, len(calls))

    client = httpx.Client(transport=httpx.MockTransport(record))
    return LlmBackend(_settings(**settings_overrides), client=client), calls


def test_get_backend_deterministic_by_default():
    backend = get_backend(Settings(database_url="x"))
    assert isinstance(backend, DeterministicBackend)


def test_get_backend_llm_needs_key():
    assert isinstance(get_backend(_settings(llm_api_key="")), DeterministicBackend)
    assert isinstance(get_backend(_settings()), LlmBackend)


def test_deterministic_backend_matches_engines():
    backend = DeterministicBackend()
    assert plan_hash(backend.suggest_plan(SETUP)) == plan_hash(generate_plan(SETUP))
    draft = _draft()
    assert backend.suggest_proposal_diffs(["SORENESS"], draft, 0) == generate_proposal(["SORENESS"], draft, 0)


def test_llm_backend_returns_validated_diff():
    diff = [
        {"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.1},
        {"op": "ADD_NOTE", "target": "week", "week_index": 1, "text": "Ease off"},
    ]
    backend, calls = _backend(lambda request, n: _llm_response(diff))
    result = backend.suggest_proposal_diffs(["SORENESS"], _draft(), 0)

    assert len(calls) == 1
    assert calls[0].headers["Authorization"] == "Bearer test-key"
    body = json.loads(calls[0].content)
    assert body["model"] == "gpt-4.1-mini"
    assert [op.op for op in result.diff] == ["ADJUST_WEEK_VOLUME", "ADD_NOTE"]
    assert result.rationale_text == "Lighter week after soreness."
    assert result.respects_locks is True


def test_llm_backend_flags_locked_targets():
    diff = [{"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.1}]
    backend, _ = _backend(lambda request, n: _llm_response(diff))
    result = backend.suggest_proposal_diffs(["SORENESS"], _draft(weeks=[1]), 0)
    assert result.respects_locks is False


def test_llm_backend_retries_then_succeeds():
    diff = [{"op": "SWAP_SESSION_TYPE", "session_id": "w00s00", "new_type": "recovery"}]

    def handler(request, n):
        if n == 1:
            return httpx.Response(503, json={"error": "busy"})
        return _llm_response(diff)

    backend, calls = _backend(handler)
    result = backend.suggest_proposal_diffs(["SORENESS"], _draft(), 0)
    assert len(calls) == 2
    assert result.diff[0].session_id == "w00s00"


def test_llm_backend_falls_back_after_retries():
    backend, calls = _backend(lambda request, n: httpx.Response(500, json={}))
    draft = _draft()
    result = backend.suggest_proposal_diffs(["SORENESS"], draft, 0)
    assert len(calls) == 2
    assert result == generate_proposal(["SORENESS"], draft, 0)


def test_llm_backend_no_retry_on_client_error():
    backend, calls = _backend(lambda request, n: httpx.Response(401, json={}))
    backend.suggest_proposal_diffs(["SORENESS"], _draft(), 0)
    assert len(calls) == 1


def test_llm_backend_falls_back_on_invalid_diff():
    backend, calls = _backend(lambda request, n: _llm_response([{"op": "DELETE_PLAN"}]), llm_retry_count=0)
    draft = _draft()
    result = backend.suggest_proposal_diffs(["MISSED_KEY"], draft, 0)
    assert len(calls) == 1
    assert result == generate_proposal(["MISSED_KEY"], draft, 0)


def test_llm_backend_falls_back_on_non_json_text():
    def handler(request, n):
        return httpx.Response(200, json={"output": [{"content": [{"text": "not json"}]}]})

    backend, calls = _backend(handler)
    draft = _draft()
    assert backend.suggest_proposal_diffs(["TOO_HARD"], draft, 0) == generate_proposal(["TOO_HARD"], draft, 0)
    assert len(calls) == 2


def test_llm_backend_plan_generation_is_rule_based():
    backend, calls = _backend(lambda request, n: httpx.Response(500))
    assert plan_hash(backend.suggest_plan(SETUP)) == plan_hash(generate_plan(SETUP))
    assert calls == []


def test_extract_output_text():
    assert _extract_output_text({"output_text": "{}"}) == "{}"
    assert _extract_output_text({"output": [{"content": [{"text": " "}, {"text": "{\"a\": 1}"}]}]}) == '{"a": 1}'
    assert _extract_output_text({}) == ""


def test_llm_backend_without_client_posts_per_request(monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        diff = [{"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.1}]
        payload = {"output_text": json.dumps({"diff": diff, "rationale": "Ease off"})}
        return httpx.Response(200, json=payload, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    backend = LlmBackend(_settings())
    assert backend.client is None
    result = backend.suggest_proposal_diffs(["SORENESS"], _draft(), 0)
    assert [op.op for op in result.diff] == ["ADJUST_WEEK_VOLUME"]
    assert len(calls) == 1
    assert calls[0][0] == "https://llm.test/v1/responses"
    assert calls[0][1]["headers"]["Authorization"] == "Bearer test-key"
