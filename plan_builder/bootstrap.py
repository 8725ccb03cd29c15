"""Process start-up: settings, logging, tables and the suggestion backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from plan_builder.config import Settings, get_settings
from plan_builder.db import get_engine, init_db
from plan_builder.logging_config import log_context, setup_logging
from plan_builder.services.backends.base import PlanBuilderBackend
from plan_builder.services.backends.factory import get_backend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Runtime:
    settings: Settings
    backend: PlanBuilderBackend


def bootstrap(settings: Settings | None = None, create_tables: bool = True) -> Runtime:
    """Resolve settings from the environment (unless given) and prepare the process.

    Idempotent: logging handlers and tables are only created once.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    if settings.is_production and settings.database_url.startswith("sqlite"):
        logger.warning("SQLite database configured in production", extra=log_context(app_env=settings.app_env))
    if create_tables:
        init_db(get_engine(settings.database_url))

    backend = get_backend(settings)
    logger.info(
        "Plan builder ready",
        extra=log_context(app_env=settings.app_env, backend=backend.NAME, ai_mode=settings.ai_mode),
    )
    return Runtime(settings=settings, backend=backend)
