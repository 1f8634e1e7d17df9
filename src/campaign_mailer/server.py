# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn campaign_mailer.server:app --host 0.0.0.0 --port 8000

Configuration comes from ``config.ini`` (or ``$CM_CONFIG``) with ``CM_*``
environment fallbacks, see :mod:`campaign_mailer.config_loader`.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import ServiceSettings, load_settings
from .core import CampaignMailerCore
from .logger import configure_logging


def build_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the core service and the FastAPI app that starts and stops it."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    core = CampaignMailerCore(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, lifespan=lifespan)


app = build_app()
