import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from email_dispatch.campaigns import CampaignStateMachine
from email_dispatch.errors import (
    CampaignAlreadySending,
    CampaignAlreadySent,
    CampaignNotFound,
    InvalidCampaign,
    InvalidCampaignState,
)
from email_dispatch.models import BatchResult, CampaignCreate, CampaignStatus, CampaignUpdate, EmailType
from email_dispatch.persistence import Persistence


def payload(**overrides):
    data = {
        "name": "Winter sale",
        "type": EmailType.SALES_ANNOUNCEMENT,
        "subject": "Big winter sale",
        "target_user_ids": ["u1", "u2"],
    }
    data.update(overrides)
    return CampaignCreate(**data)


async def make_machine(tmp_path):
    p = Persistence(str(tmp_path / "campaigns.db"))
    await p.init_db()
    return CampaignStateMachine(p)


@pytest.mark.asyncio
async def test_create_draft_and_scheduled(tmp_path):
    machine = await make_machine(tmp_path)

    draft = await machine.create(payload(), created_by="admin")
    assert draft.status is CampaignStatus.DRAFT
    assert draft.created_by == "admin"
    assert draft.target_user_ids == ["u1", "u2"]

    when = datetime.now(timezone.utc) + timedelta(days=1)
    scheduled = await machine.create(payload(scheduled_at=when))
    assert scheduled.status is CampaignStatus.SCHEDULED
    assert scheduled.scheduled_at == when


@pytest.mark.asyncio
async def test_create_rejects_campaign_without_targets(tmp_path):
    machine = await make_machine(tmp_path)
    with pytest.raises(InvalidCampaign):
        await machine.create(payload(target_user_ids=[]))


def test_campaign_payload_validation():
    with pytest.raises(ValidationError):
        payload(type=EmailType.ORDER_CONFIRMATION)
    with pytest.raises(ValidationError):
        payload(name="")
    assert payload(target_user_ids=["u1", "u1", "", "u2"]).target_user_ids == ["u1", "u2"]


@pytest.mark.asyncio
async def test_concurrent_claims_only_one_wins(tmp_path):
    machine = await make_machine(tmp_path)
    campaign = await machine.create(payload())

    results = await asyncio.gather(
        machine.begin_sending(campaign.id),
        machine.begin_sending(campaign.id),
        return_exceptions=True,
    )

    claimed = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(claimed) == 1
    assert claimed[0].status is CampaignStatus.SENDING
    assert len(errors) == 1
    assert isinstance(errors[0], CampaignAlreadySending)


@pytest.mark.asyncio
async def test_complete_and_terminal_guards(tmp_path):
    machine = await make_machine(tmp_path)
    campaign = await machine.create(payload())
    await machine.begin_sending(campaign.id)

    sent = await machine.complete(campaign.id, 3, BatchResult(success=2, failed=0, skipped=1))
    assert sent.status is CampaignStatus.SENT
    assert (sent.total_recipients, sent.success_count, sent.skipped_count) == (3, 2, 1)
    assert sent.sent_at is not None

    with pytest.raises(CampaignAlreadySent):
        await machine.begin_sending(campaign.id)
    with pytest.raises(CampaignAlreadySent):
        await machine.update(campaign.id, CampaignUpdate(name="Too late"))
    with pytest.raises(CampaignAlreadySent):
        await machine.cancel(campaign.id)


@pytest.mark.asyncio
async def test_fail_only_from_sending(tmp_path):
    machine = await make_machine(tmp_path)
    campaign = await machine.create(payload())

    assert await machine.fail(campaign.id, "resolution-failed: down") is False
    await machine.begin_sending(campaign.id)
    assert await machine.fail(campaign.id, "resolution-failed: down") is True

    failed = await machine.get(campaign.id)
    assert failed.status is CampaignStatus.FAILED
    assert failed.error == "resolution-failed: down"
    with pytest.raises(InvalidCampaignState):
        await machine.begin_sending(campaign.id)


@pytest.mark.asyncio
async def test_update_schedules_and_unschedules(tmp_path):
    machine = await make_machine(tmp_path)
    campaign = await machine.create(payload())
    when = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)

    scheduled = await machine.update(campaign.id, CampaignUpdate(scheduled_at=when, subject="New subject"))
    assert scheduled.status is CampaignStatus.SCHEDULED
    assert scheduled.subject == "New subject"

    back = await machine.update(campaign.id, CampaignUpdate.model_validate({"scheduled_at": None}))
    assert back.status is CampaignStatus.DRAFT
    assert back.scheduled_at is None
    assert back.subject == "New subject"


@pytest.mark.asyncio
async def test_cancel_and_delete(tmp_path):
    machine = await make_machine(tmp_path)
    first = await machine.create(payload())
    second = await machine.create(payload())

    cancelled = await machine.cancel(first.id)
    assert cancelled.status is CampaignStatus.CANCELLED
    with pytest.raises(InvalidCampaignState):
        await machine.begin_sending(first.id)

    await machine.begin_sending(second.id)
    with pytest.raises(CampaignAlreadySending):
        await machine.delete(second.id)

    await machine.delete(first.id)
    with pytest.raises(CampaignNotFound):
        await machine.get(first.id)
    with pytest.raises(CampaignNotFound):
        await machine.delete("missing")


@pytest.mark.asyncio
async def test_due_and_listing(tmp_path):
    machine = await make_machine(tmp_path)
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    future = datetime.now(timezone.utc) + timedelta(days=1)
    due = await machine.create(payload(scheduled_at=past))
    await machine.create(payload(scheduled_at=future))
    await machine.create(payload())

    assert await machine.due() == [due.id]
    assert len(await machine.list_campaigns()) == 3
    assert len(await machine.list_campaigns(CampaignStatus.SCHEDULED)) == 2
    assert len(await machine.list_campaigns("DRAFT", limit=10)) == 1
