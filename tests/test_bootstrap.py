"""Tests for process start-up."""

from __future__ import annotations

import logging

from sqlalchemy import inspect

from plan_builder.bootstrap import bootstrap
from plan_builder.config import Settings
from plan_builder.db import get_engine


def test_bootstrap_creates_tables_and_backend():
    runtime = bootstrap(Settings(database_url="sqlite://"))
    assert runtime.backend.NAME == "deterministic"
    tables = inspect(get_engine("sqlite://")).get_table_names()
    assert {"plans", "plan_weeks", "plan_sessions", "plan_change_proposals"} <= set(tables)


def test_bootstrap_reads_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("AI_MODE", "llm")
    monkeypatch.setenv("LLM_API_KEY", "test-key")
    monkeypatch.delenv("APP_ENV", raising=False)
    runtime = bootstrap(create_tables=False)
    assert runtime.settings.ai_mode == "llm"
    assert runtime.backend.NAME == "llm"


def test_bootstrap_warns_on_sqlite_in_production(caplog):
    with caplog.at_level(logging.WARNING, logger="plan_builder.bootstrap"):
        bootstrap(Settings(database_url="sqlite://", app_env="production"), create_tables=False)
    assert any("SQLite" in r.getMessage() for r in caplog.records)
