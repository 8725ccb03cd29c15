"""Backend selection from explicit settings."""

from __future__ import annotations

import logging

import httpx

from plan_builder.config import Settings
from plan_builder.services.backends.base import PlanBuilderBackend
from plan_builder.services.backends.deterministic import DeterministicBackend
from plan_builder.services.backends.llm import LlmBackend

logger = logging.getLogger(__name__)


def get_backend(settings: Settings, client: httpx.Client | None = None) -> PlanBuilderBackend:
    """Return the backend named by ``settings.ai_mode``.

    "llm" without an API key resolves to the deterministic backend.
    """
    if settings.ai_mode == "llm":
        if settings.llm_enabled:
            return LlmBackend(settings, client=client)
        logger.warning("AI_MODE=llm but LLM_API_KEY is not set, using deterministic backend")
    return DeterministicBackend(settings.policy)
