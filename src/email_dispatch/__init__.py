# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email notification dispatch engine for the commerce platform.

This package decides, for every candidate recipient of a transactional or
marketing email, whether the message should be sent or skipped, delivers it
through an upstream provider and records the outcome durably. It provides:

- Policy evaluation against admin settings and per-user preferences
- Per-recipient daily rate limiting with atomic reservations
- Campaign recipient resolution and bounded-concurrency batch delivery
- An append-only delivery log with provider status upgrades
- Campaign lifecycle management guarded against duplicate dispatch
- Prometheus metrics, a FastAPI control API and a click CLI

Example:
    Wiring the service with the default adapters::

        from email_dispatch.core import DispatchCore
        from email_dispatch.api import create_app

        core = DispatchCore(db_path="/data/email_dispatch.db", transport=transport, identity=identity)
        app = create_app(core, api_token="secret")
"""

__version__ = "0.3.0"
