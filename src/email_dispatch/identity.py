# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP implementation of the ``IdentityLookup`` collaborator.

Users are fetched with ``GET {base_url}/users/{user_id}``. The response is a
JSON object carrying ``email`` and optionally ``first_name`` / ``firstName``
and ``username``.

Replies are classified per user or per service:
    - 2xx with a JSON object: the user record
    - other 4xx, or a body that is not a JSON object: that user cannot be
      resolved (``IdentityNotFound``)
    - 401, 403, 429, 5xx, connection errors and timeouts: the identity
      service is unavailable (``IdentityUnavailable``)
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

import aiohttp

from .collaborators import UserRecord
from .errors import IdentityNotFound, IdentityUnavailable
from .logger import get_logger

# 4xx replies that concern every lookup, not a single user.
SERVICE_WIDE_STATUSES = frozenset({401, 403, 429})


class HttpIdentityLookup:
    """Resolve users through a REST identity service."""

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.logger = get_logger("EmailDispatch.identity")

    def _headers(self) -> dict[str, str] | None:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return None

    @staticmethod
    def _to_record(user_id: str, data: Any) -> UserRecord:
        if not isinstance(data, dict):
            raise IdentityNotFound(f"User '{user_id}': unexpected identity payload")
        return UserRecord(
            user_id=user_id,
            email=data.get("email") or data.get("email_address"),
            first_name=data.get("first_name") or data.get("firstName"),
            username=data.get("username"),
        )

    async def get_user(self, user_id: str) -> UserRecord:
        url = f"{self.base_url}/users/{quote(user_id, safe='')}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(url, headers=self._headers()) as resp:
                    if resp.status >= 500 or resp.status in SERVICE_WIDE_STATUSES:
                        raise IdentityUnavailable(f"Identity service answered {resp.status}")
                    if resp.status == 404:
                        raise IdentityNotFound(f"User '{user_id}' not found")
                    if resp.status >= 400:
                        raise IdentityNotFound(f"User '{user_id}' rejected by identity service ({resp.status})")
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError as exc:
                        raise IdentityNotFound(f"User '{user_id}': invalid identity payload") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Identity service %s not reachable: %s", self.base_url, exc)
            raise IdentityUnavailable(str(exc) or exc.__class__.__name__) from exc
        return self._to_record(user_id, data)
