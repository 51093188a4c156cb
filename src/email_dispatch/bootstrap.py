# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Wiring of the default collaborators into a DispatchCore and its ASGI app."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import DispatchConfig, load_config
from .core import DispatchCore
from .identity import HttpIdentityLookup
from .smtp_pool import SMTPPool
from .transport import SmtpTransport


def build_core(config: DispatchConfig) -> DispatchCore:
    """Create a DispatchCore wired to the configured SMTP and identity services."""
    pool = SMTPPool(
        config.smtp_host,
        config.smtp_port,
        config.smtp_user,
        config.smtp_password,
        use_tls=config.smtp_use_tls,
        max_idle=config.pool_size,
    )
    return DispatchCore(
        db_path=config.db_path,
        identity=HttpIdentityLookup(
            config.identity_base_url, token=config.identity_token, timeout=config.identity_timeout
        ),
        transport=SmtpTransport(pool),
        smtp_pool=pool,
        pool_size=config.pool_size,
        provider_timeout=config.provider_timeout,
        scheduler_interval=config.scheduler_interval,
        test_mode=config.test_mode,
    )


def build_app(config: DispatchConfig | None = None) -> FastAPI:
    """Create the FastAPI application serving a freshly built core."""
    config = config or load_config()
    core = build_core(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=config.api_token, lifespan=lifespan)
