# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Settings are loaded once, when the module is imported, and the mail service
is started and stopped with the application lifespan.

Usage:
    uvicorn cocoinbox_mail.server:app --host 0.0.0.0 --port 4000

Environment variables:
    COCO_CONFIG: Path to config.ini (default: config.ini)
    COCO_LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import MailSettings, load_settings
from .delivery import MailService
from .logger import configure_logging


def build_app(settings: MailSettings) -> FastAPI:
    """Create the service and its application for the given settings."""
    service = MailService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the mail service."""
        await service.start()
        yield
        await service.stop()

    return create_app(service, api_token=settings.api_token, lifespan=lifespan)


configure_logging()
app = build_app(load_settings())
