from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import api
from .config import get_settings, transport_config_issues
from .scheduler import AutomationScheduler

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    config_issues = transport_config_issues(settings)
    if config_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: set TRANSPORT_TYPE=stub for local runs "
                + "or provide the required transport credentials."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Resolve the orchestrator at startup so tests that swap it are honored.
        scheduler = AutomationScheduler(api.orchestrator, settings)
        scheduler.start()
        app.state.automation_scheduler = scheduler
        try:
            yield
        finally:
            scheduler.shutdown()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    origins = [value.strip().rstrip("/") for value in settings.cors_allow_origins.split(",") if value.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api.router)
    return app


app = create_app()
