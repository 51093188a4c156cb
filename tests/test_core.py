import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from email_dispatch.core import DispatchCore
from email_dispatch.errors import (
    CampaignAlreadySending,
    CampaignAlreadySent,
    InvalidSettings,
    ResolutionFailed,
    StoreUnavailable,
    UnknownEvent,
)
from email_dispatch.models import CampaignStatus, EmailStatus, EmailType


def campaign_payload(**overrides):
    data = {
        "name": "Winter sale",
        "type": "SALES_ANNOUNCEMENT",
        "subject": "Big winter sale",
        "template_data": {"saleEnds": "Sunday"},
        "target_user_ids": ["u1", "u2", "u3"],
    }
    data.update(overrides)
    return data


@pytest.mark.asyncio
async def test_init_persists_default_settings(core):
    await core.init()
    assert await core.persistence.get_settings() is not None

    settings = await core.load_settings()
    assert settings.system_enabled is True
    assert settings.max_emails_per_recipient_per_day == 5


@pytest.mark.asyncio
async def test_update_settings_merges_and_validates(core):
    await core.init()

    settings = await core.update_settings(
        {"maintenance_mode": True, "reply_to": "help@example.com"}, updated_by="u-admin", updated_by_name="Admin"
    )
    assert settings.maintenance_mode is True
    assert settings.enable_sales_emails is True
    assert settings.updated_by == "u-admin"
    assert settings.updated_at is not None

    cleared = await core.update_settings({"reply_to": None})
    assert cleared.reply_to is None
    assert cleared.maintenance_mode is True

    with pytest.raises(InvalidSettings):
        await core.update_settings({"max_emails_per_recipient_per_day": 500})
    with pytest.raises(InvalidSettings):
        await core.update_settings({"from_email": "not-an-address"})
    assert (await core.load_settings()).max_emails_per_recipient_per_day == 5


@pytest.mark.asyncio
async def test_campaign_skips_unsubscribed_user(core, transport):
    await core.init()
    await core.update_preference("u3", {"unsubscribed_all": True})
    campaign = await core.create_campaign(campaign_payload(), created_by="admin")

    result = await core.resolve_and_dispatch(campaign.id)

    assert (result.success, result.failed, result.skipped) == (2, 0, 1)
    assert sorted(m["to"] for m in transport.sent) == ["alice@example.com", "bob@example.com"]
    stored = await core.campaigns.get(campaign.id)
    assert stored.status is CampaignStatus.SENT
    assert (stored.total_recipients, stored.success_count, stored.skipped_count) == (3, 2, 1)

    with pytest.raises(CampaignAlreadySent):
        await core.resolve_and_dispatch(campaign.id)
    assert len(transport.sent) == 2


@pytest.mark.asyncio
async def test_identity_outage_fails_campaign(core, identity, transport, metrics):
    await core.init()
    campaign = await core.create_campaign(campaign_payload())
    identity.unavailable = True

    with pytest.raises(ResolutionFailed):
        await core.resolve_and_dispatch(campaign.id)

    stored = await core.campaigns.get(campaign.id)
    assert stored.status is CampaignStatus.FAILED
    assert stored.error.startswith("resolution-failed")
    assert transport.sent == []
    assert metrics.registry.get_sample_value("eds_campaigns_total", {"outcome": "failed"}) == 1


@pytest.mark.asyncio
async def test_send_campaign_claims_before_queueing(core, transport):
    await core.init()
    campaign = await core.create_campaign(campaign_payload())

    queued = await core.send_campaign(campaign.id)
    assert queued == {"ok": True, "status": "queued", "campaign_id": campaign.id}
    with pytest.raises(CampaignAlreadySending):
        await core.send_campaign(campaign.id)

    assert await core.process_pending() == 1
    assert (await core.campaigns.get(campaign.id)).status is CampaignStatus.SENT
    assert len(transport.sent) == 3

    result = await core.handle_command("sendCampaign", {"id": campaign.id})
    assert result["ok"] is False
    assert result["error"] == "already-sent"


@pytest.mark.asyncio
async def test_scheduler_dispatches_due_campaigns(core):
    await core.init()
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    future = datetime.now(timezone.utc) + timedelta(hours=1)
    due = await core.create_campaign(campaign_payload(scheduled_at=past.isoformat()))
    later = await core.create_campaign(campaign_payload(scheduled_at=future.isoformat()))

    assert await core.run_scheduled() == 1
    assert (await core.campaigns.get(due.id)).status is CampaignStatus.SENT
    assert (await core.campaigns.get(later.id)).status is CampaignStatus.SCHEDULED


@pytest.mark.asyncio
async def test_interrupted_campaigns_fail_on_startup(tmp_path, core, identity, transport):
    await core.init()
    campaign = await core.create_campaign(campaign_payload())
    await core.campaigns.begin_sending(campaign.id)

    restarted = DispatchCore(db_path=core.persistence.db_path, identity=identity, transport=transport, test_mode=True)
    await restarted.init()

    stored = await restarted.campaigns.get(campaign.id)
    assert stored.status is CampaignStatus.FAILED
    assert stored.error.startswith("interrupted")


@pytest.mark.asyncio
async def test_evaluate_single_resolves_identity(core, transport):
    await core.init()

    outcome = await core.evaluate_single(
        EmailType.ORDER_CONFIRMATION, "u1", template_data={"orderNumber": "A-1", "orderTotal": "10.00"}
    )

    assert outcome.status is EmailStatus.SENT
    assert outcome.message_id == "msg-1@test.local"
    assert transport.sent[0]["to"] == "alice@example.com"
    assert transport.sent[0]["subject"] == "Your order is confirmed"
    assert "Alice" in transport.sent[0]["html"]
    log = await core.persistence.get_log(outcome.log_id)
    assert log["campaign_id"] is None


@pytest.mark.asyncio
async def test_evaluate_single_unknown_identity_writes_no_log(core, transport):
    await core.init()

    outcome = await core.evaluate_single(EmailType.PASSWORD_RESET, "ghost", template_data={"resetUrl": "https://x"})

    assert outcome.status is EmailStatus.FAILED
    assert outcome.reason == "identity-not-found"
    assert outcome.log_id is None
    assert (await core.list_logs())["total"] == 0


@pytest.mark.asyncio
async def test_maintenance_mode_only_sends_critical(core, transport):
    await core.init()
    await core.update_settings({"maintenance_mode": True})

    welcome = await core.evaluate_single(EmailType.WELCOME, "u1")
    reset = await core.evaluate_single(EmailType.PASSWORD_RESET, "u1", template_data={"resetUrl": "https://reset"})

    assert welcome.status is EmailStatus.SKIPPED
    assert welcome.reason == "maintenance-mode"
    assert reset.status is EmailStatus.SENT


@pytest.mark.asyncio
async def test_events_are_queued_and_processed(core, transport):
    await core.init()

    queued = await core.handle_event(
        "order/created", {"userId": "u2", "orderNumber": "A-7", "orderTotal": "42.00"}
    )
    assert queued == {"ok": True, "status": "queued", "type": "ORDER_CONFIRMATION"}
    assert transport.sent == []

    assert await core.process_pending() == 1
    logs = (await core.list_logs())["logs"]
    assert len(logs) == 1
    assert logs[0]["type"] == "ORDER_CONFIRMATION"
    assert logs[0]["status"] == "SENT"
    assert "A-7" in transport.sent[0]["html"]


@pytest.mark.asyncio
async def test_user_created_event_marks_preference_verified(core):
    await core.init()

    await core.handle_event("user/created", {"userId": "u3"})
    await core.process_pending()

    preference = await core.get_preference("u3")
    assert preference.email_verified is True
    assert (await core.list_logs(status="SENT"))["total"] == 1


@pytest.mark.asyncio
async def test_unknown_event(core):
    await core.init()
    with pytest.raises(UnknownEvent):
        await core.handle_event("order/refunded", {"userId": "u1"})
    with pytest.raises(UnknownEvent):
        await core.handle_event("order/created", {"orderNumber": "A-1"})

    result = await core.handle_command("triggerEvent", {"name": "nope", "data": {"userId": "u1"}})
    assert result == {"ok": False, "error": "unknown-event", "detail": "Unknown event 'nope'"}


@pytest.mark.asyncio
async def test_send_test_email(core, transport):
    await core.init()

    outcome = await core.send_test("admin@example.com")

    assert outcome.status is EmailStatus.SENT
    assert transport.sent[0]["to"] == "admin@example.com"
    assert transport.sent[0]["subject"] == "Test email"


@pytest.mark.asyncio
async def test_provider_events_and_stats(core, metrics):
    await core.init()
    await core.update_preference("u3", {"unsubscribed_all": True})
    campaign = await core.create_campaign(campaign_payload())
    await core.resolve_and_dispatch(campaign.id)
    sent_logs = (await core.list_logs(status="SENT", campaign_id=campaign.id))["logs"]

    assert await core.apply_provider_event(sent_logs[0]["message_id"], "OPENED", "2025-01-31T12:00:00Z") is True
    assert await core.apply_provider_event(sent_logs[0]["message_id"], "DELIVERED") is False
    assert await core.apply_provider_event("unknown-id", "DELIVERED") is False

    campaign_stats = await core.campaign_stats(campaign.id)
    assert campaign_stats["open_count"] == 1
    assert campaign_stats["open_rate"] == 50.0
    assert campaign_stats["status_counts"] == {"SENT": 1, "OPENED": 1, "SKIPPED": 1}

    stats = await core.stats()
    assert stats["total_emails_sent"] == 2
    assert stats["total_campaigns"] == 1
    assert stats["active_campaigns"] == 0
    assert stats["users_with_preferences"] == 3
    assert stats["templates_count"] == len(EmailType)
    assert stats["success_rate"] == 66.7
    assert metrics.registry.get_sample_value("eds_provider_events_total", {"status": "OPENED", "applied": "yes"}) == 1


@pytest.mark.asyncio
async def test_list_logs_paging(core):
    await core.init()
    for user_id in ("u1", "u2", "u3"):
        await core.evaluate_single(EmailType.WELCOME, user_id)

    page = await core.list_logs(page=2, limit=2)
    assert page["total"] == 3
    assert page["pages"] == 2
    assert len(page["logs"]) == 1
    assert (await core.list_logs(limit=1000))["limit"] == 200


@pytest.mark.asyncio
async def test_handle_command_errors(core):
    await core.init()

    assert await core.handle_command("bogus", {}) == {"ok": False, "error": "unknown command"}
    missing_id = await core.handle_command("getCampaign", {})
    assert missing_id["error"] == "invalid-payload"
    invalid = await core.handle_command("createCampaign", campaign_payload(type="ORDER_CONFIRMATION"))
    assert invalid["error"] == "invalid-payload"
    not_found = await core.handle_command("getCampaign", {"id": "missing"})
    assert not_found["error"] == "campaign-not-found"
    no_targets = await core.handle_command("createCampaign", campaign_payload(target_user_ids=[]))
    assert no_targets["error"] == "invalid-campaign"


@pytest.mark.asyncio
async def test_command_roundtrip(core):
    await core.init()

    created = await core.handle_command("createCampaign", {**campaign_payload(), "created_by": "admin"})
    campaign_id = created["campaign"]["id"]
    assert created["campaign"]["created_by"] == "admin"

    updated = await core.handle_command("updateCampaign", {"id": campaign_id, "subject": "Updated"})
    assert updated["campaign"]["subject"] == "Updated"

    listed = await core.handle_command("listCampaigns", {"status": "DRAFT"})
    assert listed["total"] == 1

    prefs = await core.handle_command("updatePreferences", {"user_id": "u1", "sales_emails": "false"})
    # Only a literal true enables a flag.
    assert prefs["preferences"]["sales_emails"] is False

    cancelled = await core.handle_command("cancelCampaign", {"id": campaign_id})
    assert cancelled["campaign"]["status"] == "CANCELLED"
    assert (await core.handle_command("deleteCampaign", {"id": campaign_id}))["ok"] is True


@pytest.mark.asyncio
async def test_start_stop_drains_queue(core, transport):
    await core.start()
    await core.handle_event("user/password-reset", {"userId": "u1", "resetUrl": "https://reset"})
    await core.stop()

    assert len(transport.sent) == 1
    assert transport.sent[0]["subject"] == "Reset your password"


@pytest.mark.asyncio
async def test_target_all_campaign_excludes_unsubscribed_users(core, transport):
    await core.init()
    await core.get_preference("u1")
    await core.get_preference("u2")
    await core.update_preference("u3", {"unsubscribed_all": True})
    campaign = await core.create_campaign(campaign_payload(target_all=True, target_user_ids=[]))

    result = await core.resolve_and_dispatch(campaign.id)

    assert (result.success, result.failed, result.skipped) == (2, 0, 0)
    stored = await core.campaigns.get(campaign.id)
    assert stored.status is CampaignStatus.SENT
    assert stored.total_recipients == 2
    logged_users = {row["user_id"] for row in await core.persistence.list_logs(campaign_id=campaign.id)}
    assert logged_users == {"u1", "u2"}
    assert sorted(m["to"] for m in transport.sent) == ["alice@example.com", "bob@example.com"]


@pytest.mark.asyncio
async def test_failed_campaign_has_no_sends_in_flight(core, transport, monkeypatch):
    await core.init()
    campaign = await core.create_campaign(campaign_payload())
    transport.delay = 0.2
    ensure_preference = core.persistence.ensure_preference

    async def failing_ensure_preference(user_id, now_ts, email_verified=False):
        if user_id == "u1":
            raise StoreUnavailable("database is locked")
        return await ensure_preference(user_id, now_ts, email_verified)

    monkeypatch.setattr(core.persistence, "ensure_preference", failing_ensure_preference)

    with pytest.raises(StoreUnavailable):
        await core.resolve_and_dispatch(campaign.id)

    await asyncio.sleep(0.4)
    stored = await core.campaigns.get(campaign.id)
    assert stored.status is CampaignStatus.FAILED
    assert stored.success_count == 0
    assert transport.sent == []
