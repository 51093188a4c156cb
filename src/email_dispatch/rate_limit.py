# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient daily rate limiter using persisted send counters.

This module implements the daily send ceiling applied to every recipient.
Counters live in SQLite and are keyed by (user_id, UTC calendar day), so
limits hold across service restarts and across concurrent dispatch workers.

Check and reservation are one atomic step: the persistence layer increments
the counter only while it is below the ceiling, so N+1 concurrent callers
against a ceiling of N yield exactly N grants.

Example:
    Using the rate limiter::

        rate_limiter = RateLimiter(persistence)
        if await rate_limiter.check_and_reserve(user_id, limit=settings.max_emails_per_recipient_per_day):
            await transport.send(...)
        else:
            # Log SKIPPED with reason rate-limit-exceeded
            ...
"""

from datetime import datetime

from .models import as_utc, utc_now
from .persistence import Persistence


class RateLimiter:
    """Per-recipient daily rate limiter backed by SQLite persistence.

    A reserved slot counts as used even when the subsequent provider call
    fails. The day boundary is midnight UTC.

    Attributes:
        persistence: The Persistence instance holding the send counters.
    """

    def __init__(self, persistence: Persistence):
        """Initialize the rate limiter with a persistence backend.

        Args:
            persistence: A Persistence instance providing the atomic
                ``reserve_send_slot`` operation.
        """
        self.persistence = persistence

    @staticmethod
    def day_key(now: datetime | None = None) -> str:
        """Return the counter key (``YYYY-MM-DD``) of the UTC day containing ``now``."""
        return as_utc(now or utc_now()).date().isoformat()

    async def check_and_reserve(self, user_id: str, day: str | None = None, *, limit: int) -> bool:
        """Atomically check the ceiling and take one send slot.

        Args:
            user_id: The recipient identity.
            day: Counter day key, defaults to the current UTC day.
            limit: Daily ceiling from the settings snapshot. ``0`` disables
                the limit.

        Returns:
            True if a slot was reserved and the send may proceed, False if the
            recipient already reached the ceiling for the day.
        """
        return await self.persistence.reserve_send_slot(user_id, day or self.day_key(), int(limit))

    async def sent_today(self, user_id: str, day: str | None = None) -> int:
        """Number of slots reserved by ``user_id`` on ``day``."""
        return await self.persistence.count_sends(user_id, day or self.day_key())
