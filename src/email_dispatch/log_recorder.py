# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Append-only delivery log with forward-only provider upgrades.

Every delivery attempt produces exactly one ``EmailLog`` row. Afterwards the
only mutation allowed is a provider event moving the row forward along::

    SENT -> DELIVERED -> OPENED -> CLICKED
    SENT | DELIVERED -> BOUNCED

Events that would move a row backwards, repeat its current status or target
an unknown message id are ignored. Opens and clicks are also reflected in
the owning campaign's counters.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from .logger import get_logger
from .models import DeliveryAttempt, EmailLog, EmailStatus, format_ts, utc_now
from .persistence import Persistence

# Target status -> statuses it may be reached from.
FORWARD_TRANSITIONS: dict[EmailStatus, frozenset[EmailStatus]] = {
    EmailStatus.DELIVERED: frozenset({EmailStatus.SENT}),
    EmailStatus.OPENED: frozenset({EmailStatus.SENT, EmailStatus.DELIVERED}),
    EmailStatus.CLICKED: frozenset({EmailStatus.SENT, EmailStatus.DELIVERED, EmailStatus.OPENED}),
    EmailStatus.BOUNCED: frozenset({EmailStatus.SENT, EmailStatus.DELIVERED}),
}

_TIMESTAMP_COLUMN = {
    EmailStatus.DELIVERED: "delivered_at",
    EmailStatus.OPENED: "opened_at",
    EmailStatus.CLICKED: "clicked_at",
    EmailStatus.BOUNCED: "bounced_at",
}


class LogRecorder:
    """Writes attempt rows and applies provider callbacks."""

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("EmailDispatch.logs")

    async def record(self, attempt: DeliveryAttempt) -> EmailLog:
        """Persist one attempt and return the stored row."""
        now = format_ts(utc_now())
        row = {
            "id": uuid.uuid4().hex,
            "campaign_id": attempt.campaign_id,
            "user_id": attempt.user_id,
            "email": attempt.email,
            "type": attempt.type.value,
            "subject": attempt.subject,
            "status": attempt.status.value,
            "reason": attempt.reason,
            "error": attempt.error,
            "message_id": attempt.message_id,
            "created_at": now,
            "sent_at": now if attempt.status == EmailStatus.SENT else None,
        }
        await self.persistence.insert_log(row)
        return EmailLog.model_validate(row)

    async def apply_provider_event(
        self,
        message_id: str,
        status: EmailStatus | str,
        occurred_at: datetime | None = None,
    ) -> bool:
        """Upgrade the log row identified by ``message_id``.

        Returns:
            True if the row moved forward, False if the event was ignored.
        """
        try:
            target = EmailStatus(status)
        except ValueError:
            self.logger.debug("Ignoring provider event with unknown status %r", status)
            return False
        allowed_from = FORWARD_TRANSITIONS.get(target)
        if not message_id or allowed_from is None:
            self.logger.debug("Ignoring provider event %s for %s", target.value, message_id)
            return False

        previous = await self.persistence.upgrade_log_status(
            message_id,
            target.value,
            [s.value for s in allowed_from],
            _TIMESTAMP_COLUMN[target],
            format_ts(occurred_at or utc_now()),
        )
        if previous is None:
            self.logger.debug("Provider event %s for %s not applicable", target.value, message_id)
            return False

        campaign_id = previous.get("campaign_id")
        if campaign_id:
            deltas: dict[str, int] = {}
            if target == EmailStatus.OPENED:
                deltas["open_count"] = 1
            elif target == EmailStatus.CLICKED:
                deltas["click_count"] = 1
                # A click implies an open the provider may never have reported.
                if previous["status"] != EmailStatus.OPENED.value:
                    deltas["open_count"] = 1
            if deltas:
                await self.persistence.increment_campaign_counters(campaign_id, **deltas)
        return True
