# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign lifecycle with atomic transition guards.

States::

    DRAFT ──> SCHEDULED ──> SENDING ──> SENT
      │           │            └──────> FAILED
      └───────────┴──> CANCELLED

Every transition is a single conditional ``UPDATE`` on the current status,
so two concurrent triggers of the same campaign can never both claim it.
When the guard does not match, the current row is read back to raise the
specific error (not found, already sending, already sent, wrong state).
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from .errors import (
    CampaignAlreadySending,
    CampaignAlreadySent,
    CampaignNotFound,
    InvalidCampaign,
    InvalidCampaignState,
)
from .logger import get_logger
from .models import (
    BatchResult,
    CampaignCreate,
    CampaignStatus,
    CampaignUpdate,
    EmailCampaign,
    format_ts,
    utc_now,
)
from .persistence import Persistence

EDITABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
CLAIMABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
DELETABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.SENT,
             CampaignStatus.FAILED, CampaignStatus.CANCELLED)


def _values(statuses: Sequence[CampaignStatus]) -> list[str]:
    return [s.value for s in statuses]


class CampaignStateMachine:
    """Create, edit and move campaigns through their lifecycle."""

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("EmailDispatch.campaigns")

    async def get(self, campaign_id: str) -> EmailCampaign:
        row = await self.persistence.get_campaign(campaign_id)
        if row is None:
            raise CampaignNotFound(f"Campaign '{campaign_id}' not found")
        return EmailCampaign.model_validate(row)

    async def _guard_failed(self, campaign_id: str, action: str) -> None:
        """Raise the error explaining why a guarded transition matched no row."""
        campaign = await self.get(campaign_id)
        if campaign.status == CampaignStatus.SENDING:
            raise CampaignAlreadySending(f"Campaign '{campaign_id}' is already sending")
        if campaign.status == CampaignStatus.SENT:
            raise CampaignAlreadySent(f"Campaign '{campaign_id}' was already sent")
        raise InvalidCampaignState(campaign_id, campaign.status.value, action)

    async def create(self, payload: CampaignCreate, created_by: str | None = None) -> EmailCampaign:
        """Store a new campaign as DRAFT, or SCHEDULED when it has a send time."""
        if not payload.target_all and not payload.target_user_ids:
            raise InvalidCampaign("Campaign needs target_all or at least one target user")
        now = format_ts(utc_now())
        status = CampaignStatus.SCHEDULED if payload.scheduled_at else CampaignStatus.DRAFT
        row: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "name": payload.name,
            "description": payload.description,
            "type": payload.type.value,
            "status": status.value,
            "subject": payload.subject,
            "template_data": payload.template_data,
            "target_all": payload.target_all,
            "target_user_ids": payload.target_user_ids,
            "scheduled_at": format_ts(payload.scheduled_at),
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        await self.persistence.insert_campaign(row)
        self.logger.info("Campaign %s created as %s", row["id"], status.value)
        return await self.get(row["id"])

    async def update(self, campaign_id: str, changes: CampaignUpdate) -> EmailCampaign:
        """Edit a DRAFT or SCHEDULED campaign.

        Setting ``scheduled_at`` schedules a draft; clearing it (explicit
        ``null``) brings a scheduled campaign back to DRAFT.
        """
        fields = changes.model_dump(exclude_unset=True)
        if "type" in fields and fields["type"] is not None:
            fields["type"] = fields["type"].value
        for key in ("name", "subject", "type", "target_all", "target_user_ids", "template_data"):
            if key in fields and fields[key] is None:
                del fields[key]
        if "scheduled_at" in fields:
            scheduled = fields["scheduled_at"]
            fields["scheduled_at"] = format_ts(scheduled)
            fields["status"] = (CampaignStatus.SCHEDULED if scheduled else CampaignStatus.DRAFT).value
        fields["updated_at"] = format_ts(utc_now())
        if not await self.persistence.update_campaign(campaign_id, fields, _values(EDITABLE)):
            await self._guard_failed(campaign_id, "edit")
        return await self.get(campaign_id)

    async def schedule(self, campaign_id: str, when: datetime) -> EmailCampaign:
        ok = await self.persistence.transition_campaign(
            campaign_id,
            _values(EDITABLE),
            CampaignStatus.SCHEDULED.value,
            {"scheduled_at": format_ts(when), "updated_at": format_ts(utc_now())},
        )
        if not ok:
            await self._guard_failed(campaign_id, "schedule")
        return await self.get(campaign_id)

    async def begin_sending(self, campaign_id: str) -> EmailCampaign:
        """Claim the campaign for dispatch (DRAFT/SCHEDULED -> SENDING).

        Raises:
            CampaignNotFound, CampaignAlreadySending, CampaignAlreadySent,
            InvalidCampaignState: The claim did not succeed.
        """
        ok = await self.persistence.transition_campaign(
            campaign_id,
            _values(CLAIMABLE),
            CampaignStatus.SENDING.value,
            {"error": None, "updated_at": format_ts(utc_now())},
        )
        if not ok:
            await self._guard_failed(campaign_id, "send")
        self.logger.info("Campaign %s claimed for sending", campaign_id)
        return await self.get(campaign_id)

    async def complete(self, campaign_id: str, total_recipients: int, result: BatchResult) -> EmailCampaign:
        """SENDING -> SENT with the final counters, even when some recipients failed."""
        now = format_ts(utc_now())
        ok = await self.persistence.transition_campaign(
            campaign_id,
            [CampaignStatus.SENDING.value],
            CampaignStatus.SENT.value,
            {
                "total_recipients": total_recipients,
                "success_count": result.success,
                "failure_count": result.failed,
                "skipped_count": result.skipped,
                "sent_at": now,
                "updated_at": now,
            },
        )
        if not ok:
            await self._guard_failed(campaign_id, "complete")
        self.logger.info(
            "Campaign %s sent: %d success, %d failed, %d skipped",
            campaign_id,
            result.success,
            result.failed,
            result.skipped,
        )
        return await self.get(campaign_id)

    async def fail(self, campaign_id: str, error: str) -> bool:
        """SENDING -> FAILED. Returns False when the campaign was not SENDING."""
        ok = await self.persistence.transition_campaign(
            campaign_id,
            [CampaignStatus.SENDING.value],
            CampaignStatus.FAILED.value,
            {"error": error, "updated_at": format_ts(utc_now())},
        )
        if ok:
            self.logger.error("Campaign %s failed: %s", campaign_id, error)
        return ok

    async def cancel(self, campaign_id: str) -> EmailCampaign:
        ok = await self.persistence.transition_campaign(
            campaign_id,
            _values(EDITABLE),
            CampaignStatus.CANCELLED.value,
            {"updated_at": format_ts(utc_now())},
        )
        if not ok:
            await self._guard_failed(campaign_id, "cancel")
        self.logger.info("Campaign %s cancelled", campaign_id)
        return await self.get(campaign_id)

    async def delete(self, campaign_id: str) -> None:
        """Delete any campaign that is not currently SENDING."""
        if not await self.persistence.delete_campaign(campaign_id, _values(DELETABLE)):
            await self._guard_failed(campaign_id, "delete")

    async def list_campaigns(
        self, status: CampaignStatus | str | None = None, *, limit: int = 20, offset: int = 0
    ) -> list[EmailCampaign]:
        rows = await self.persistence.list_campaigns(
            CampaignStatus(status).value if status else None, limit=limit, offset=offset
        )
        return [EmailCampaign.model_validate(row) for row in rows]

    async def due(self, now: datetime | None = None) -> list[str]:
        """IDs of SCHEDULED campaigns whose send time has been reached."""
        return await self.persistence.due_campaign_ids(format_ts(now or utc_now()))
