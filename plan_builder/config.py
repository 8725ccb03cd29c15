"""Application configuration with environment-specific profiles.

Supports dev, staging, and production environments via APP_ENV.
All values can be overridden by environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class AdaptationPolicy:
    """Tunable thresholds, caps and bounds used by the adaptation engines."""

    # Trigger derivation
    soreness_window_days: int = 7
    effort_window_days: int = 10
    too_hard_rpe: int = 8
    too_hard_min_signals: int = 2
    missed_key_min_opportunities: int = 2
    missed_key_rate: float = 0.5  # must be exceeded
    key_session_min_minutes: int = 90
    high_compliance_min_sample: int = 4
    high_compliance_rate: float = 0.8

    # Proposal policy
    soreness_volume_pct: float = -0.10
    missed_key_volume_pct: float = -0.15
    high_compliance_volume_pct: float = 0.05
    high_compliance_bump_minutes: int = 10

    # Safety rewrite
    volume_pct_min: float = -0.20
    volume_pct_max: float = 0.12
    session_duration_cap_pct: float = 0.25
    session_min_minutes: int = 20
    session_max_minutes: int = 240


@dataclass(frozen=True)
class Settings:
    """Immutable application settings resolved from environment."""

    database_url: str
    app_env: str = "dev"
    log_level: str = "INFO"

    # Suggestion backend
    ai_mode: str = "deterministic"
    llm_api_url: str = "https://api.openai.com/v1/responses"
    llm_api_key: str = ""
    llm_model: str = "gpt-4.1-mini"
    llm_timeout_s: float = 30.0
    llm_retry_count: int = 1
    llm_max_output_tokens: int = 1200

    policy: AdaptationPolicy = field(default_factory=AdaptationPolicy)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def llm_enabled(self) -> bool:
        return self.ai_mode == "llm" and bool(self.llm_api_key)


# -- Environment profiles --

_ENV_PROFILES: dict[str, dict] = {
    "dev": {
        "log_level": "DEBUG",
        "llm_retry_count": 0,
    },
    "staging": {
        "log_level": "INFO",
        "llm_retry_count": 1,
    },
    "production": {
        "log_level": "WARNING",
        "llm_retry_count": 2,
        "volume_pct_max": 0.10,
    },
}

_AI_MODES = {"deterministic", "llm"}


def get_database_url() -> str:
    """Resolve database URL from env var, falling back to a local SQLite file."""
    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    return "sqlite:///plan_builder.db"


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def get_policy(profile: dict | None = None) -> AdaptationPolicy:
    """Build the adaptation policy from defaults, profile and POLICY_* env vars."""
    profile = profile or {}
    defaults = AdaptationPolicy()
    return AdaptationPolicy(
        soreness_window_days=_env_int("POLICY_SORENESS_WINDOW_DAYS", defaults.soreness_window_days),
        effort_window_days=_env_int("POLICY_EFFORT_WINDOW_DAYS", defaults.effort_window_days),
        too_hard_rpe=_env_int("POLICY_TOO_HARD_RPE", defaults.too_hard_rpe),
        too_hard_min_signals=_env_int("POLICY_TOO_HARD_MIN_SIGNALS", defaults.too_hard_min_signals),
        missed_key_min_opportunities=_env_int(
            "POLICY_MISSED_KEY_MIN_OPPORTUNITIES", defaults.missed_key_min_opportunities
        ),
        missed_key_rate=_env_float("POLICY_MISSED_KEY_RATE", defaults.missed_key_rate),
        key_session_min_minutes=_env_int("POLICY_KEY_SESSION_MIN_MINUTES", defaults.key_session_min_minutes),
        high_compliance_min_sample=_env_int("POLICY_HIGH_COMPLIANCE_MIN_SAMPLE", defaults.high_compliance_min_sample),
        high_compliance_rate=_env_float("POLICY_HIGH_COMPLIANCE_RATE", defaults.high_compliance_rate),
        soreness_volume_pct=defaults.soreness_volume_pct,
        missed_key_volume_pct=defaults.missed_key_volume_pct,
        high_compliance_volume_pct=defaults.high_compliance_volume_pct,
        high_compliance_bump_minutes=defaults.high_compliance_bump_minutes,
        volume_pct_min=_env_float("POLICY_VOLUME_PCT_MIN", profile.get("volume_pct_min", defaults.volume_pct_min)),
        volume_pct_max=_env_float("POLICY_VOLUME_PCT_MAX", profile.get("volume_pct_max", defaults.volume_pct_max)),
        session_duration_cap_pct=_env_float("POLICY_SESSION_DURATION_CAP_PCT", defaults.session_duration_cap_pct),
        session_min_minutes=defaults.session_min_minutes,
        session_max_minutes=defaults.session_max_minutes,
    )


def get_settings() -> Settings:
    """Build Settings by merging environment profile with env-var overrides."""
    app_env = os.getenv("APP_ENV", "dev")
    profile = _ENV_PROFILES.get(app_env, _ENV_PROFILES["dev"])

    ai_mode = os.getenv("AI_MODE", "deterministic").strip().lower()
    if ai_mode not in _AI_MODES:
        ai_mode = "deterministic"

    return Settings(
        database_url=get_database_url(),
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", profile.get("log_level", "INFO")),
        ai_mode=ai_mode,
        llm_api_url=os.getenv("LLM_API_URL", "https://api.openai.com/v1/responses"),
        llm_api_key=os.getenv("LLM_API_KEY", ""),
        llm_model=os.getenv("LLM_MODEL", "gpt-4.1-mini"),
        llm_timeout_s=_env_float("LLM_TIMEOUT_S", 30.0),
        llm_retry_count=max(0, min(2, _env_int("LLM_RETRY_COUNT", profile.get("llm_retry_count", 1)))),
        llm_max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 1200),
        policy=get_policy(profile),
    )
