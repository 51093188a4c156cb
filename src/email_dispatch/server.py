# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds a DispatchCore with the default collaborators (SMTP
transport, HTTP identity lookup, Jinja2 templates) from the configuration
returned by :func:`email_dispatch.config_loader.load_config`, and exposes a
FastAPI application whose lifespan starts and stops the core.

Usage:
    uvicorn email_dispatch.server:app --host 0.0.0.0 --port 8000

Environment variables:
    EDS_CONFIG: Path to the INI configuration file (default: config.ini)
    EDS_DB_PATH: Path to SQLite database (default: /data/email_dispatch.db)
"""

from .bootstrap import build_app
from .config_loader import load_config
from .logger import configure_logging

config = load_config()
configure_logging(config.log_level)
app = build_app(config)
