import pytest

from email_dispatch.errors import StoreUnavailable
from email_dispatch.persistence import Persistence

NOW = "2025-01-31T10:00:00.000000+00:00"
LATER = "2025-01-31T11:00:00.000000+00:00"


def campaign_row(campaign_id="cmp1", status="DRAFT", **extra):
    row = {
        "id": campaign_id,
        "name": "Winter sale",
        "type": "SALES_ANNOUNCEMENT",
        "status": status,
        "subject": "Big winter sale",
        "template_data": {"saleEnds": "Sunday"},
        "target_all": False,
        "target_user_ids": ["u1", "u2"],
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(extra)
    return row


def log_row(log_id, status="SENT", campaign_id=None, message_id=None, created_at=NOW):
    return {
        "id": log_id,
        "campaign_id": campaign_id,
        "user_id": "u1",
        "email": "alice@example.com",
        "type": "SALES_ANNOUNCEMENT",
        "subject": "Big winter sale",
        "status": status,
        "message_id": message_id,
        "created_at": created_at,
    }


@pytest.mark.asyncio
async def test_settings_singleton(tmp_path):
    p = Persistence(str(tmp_path / "settings.db"))
    await p.init_db()
    assert await p.get_settings() is None

    await p.save_settings({"system_enabled": True, "from_name": "Shop", "updated_by": "admin", "updated_at": NOW})
    await p.save_settings({"system_enabled": False, "from_name": "Shop", "updated_by": "ops", "updated_at": LATER})

    settings = await p.get_settings()
    assert settings["system_enabled"] is False
    assert settings["updated_by"] == "ops"
    assert settings["updated_at"] == LATER


@pytest.mark.asyncio
async def test_preferences_lazy_creation_and_upsert(tmp_path):
    p = Persistence(str(tmp_path / "prefs.db"))
    await p.init_db()
    assert await p.get_preference("u1") is None

    created = await p.ensure_preference("u1", NOW)
    assert created["sales_emails"] is True
    assert created["unsubscribed_all"] is False
    assert created["email_verified"] is False

    again = await p.ensure_preference("u1", LATER, email_verified=True)
    assert again["created_at"] == NOW
    assert again["email_verified"] is False

    updated = await p.upsert_preference("u1", {"sales_emails": False, "unknown_flag": True}, LATER)
    assert updated["sales_emails"] is False
    assert updated["offer_emails"] is True
    assert updated["updated_at"] == LATER
    assert "unknown_flag" not in updated

    fresh = await p.upsert_preference("u2", {"unsubscribed_all": True}, LATER)
    assert fresh["unsubscribed_all"] is True
    assert fresh["created_at"] == LATER

    await p.ensure_preference("u3", LATER)
    assert await p.list_subscribed_user_ids() == ["u1", "u3"]
    assert await p.count_preferences() == 3


@pytest.mark.asyncio
async def test_campaign_roundtrip_and_guarded_transition(tmp_path):
    p = Persistence(str(tmp_path / "campaigns.db"))
    await p.init_db()
    await p.insert_campaign(campaign_row())

    stored = await p.get_campaign("cmp1")
    assert stored["template_data"] == {"saleEnds": "Sunday"}
    assert stored["target_user_ids"] == ["u1", "u2"]
    assert stored["target_all"] is False
    assert stored["skipped_count"] == 0

    assert await p.transition_campaign("cmp1", ["DRAFT", "SCHEDULED"], "SENDING") is True
    assert await p.transition_campaign("cmp1", ["DRAFT", "SCHEDULED"], "SENDING") is False
    assert await p.transition_campaign("missing", ["DRAFT"], "SENDING") is False

    assert await p.update_campaign("cmp1", {"name": "Renamed"}, ["DRAFT", "SCHEDULED"]) is False
    assert await p.delete_campaign("cmp1", ["DRAFT", "SENT"]) is False

    await p.increment_campaign_counters("cmp1", success_count=2, skipped_count=1, bogus=5)
    stored = await p.get_campaign("cmp1")
    assert (stored["success_count"], stored["skipped_count"]) == (2, 1)
    assert await p.count_campaigns(["SENDING"]) == 1


@pytest.mark.asyncio
async def test_due_campaigns_and_listing(tmp_path):
    p = Persistence(str(tmp_path / "due.db"))
    await p.init_db()
    await p.insert_campaign(campaign_row("early", "SCHEDULED", scheduled_at=NOW))
    await p.insert_campaign(campaign_row("late", "SCHEDULED", scheduled_at="2025-02-01T00:00:00.000000+00:00"))
    await p.insert_campaign(campaign_row("draft", "DRAFT", created_at=LATER))

    assert await p.due_campaign_ids(LATER) == ["early"]
    assert [c["id"] for c in await p.list_campaigns()] == ["draft", "late", "early"]
    assert [c["id"] for c in await p.list_campaigns("SCHEDULED", limit=1)] == ["late"]
    assert await p.count_campaigns() == 3


@pytest.mark.asyncio
async def test_logs_maintain_status_counters(tmp_path):
    p = Persistence(str(tmp_path / "logs.db"))
    await p.init_db()
    await p.insert_log(log_row("l1", "SENT", campaign_id="cmp1", message_id="m1"))
    await p.insert_log(log_row("l2", "SKIPPED", campaign_id="cmp1", created_at=LATER))
    await p.insert_log(log_row("l3", "FAILED"))

    assert await p.status_counts() == {"SENT": 1, "SKIPPED": 1, "FAILED": 1}
    assert await p.status_counts("cmp1") == {"SENT": 1, "SKIPPED": 1}

    previous = await p.upgrade_log_status("m1", "DELIVERED", ["SENT"], "delivered_at", LATER)
    assert previous["status"] == "SENT"
    assert await p.upgrade_log_status("m1", "DELIVERED", ["SENT"], "delivered_at", LATER) is None
    assert await p.upgrade_log_status("unknown", "DELIVERED", ["SENT"], "delivered_at", LATER) is None

    row = await p.get_log_by_message_id("m1")
    assert row["status"] == "DELIVERED"
    assert row["delivered_at"] == LATER
    assert await p.status_counts("cmp1") == {"DELIVERED": 1, "SKIPPED": 1}

    newest_first = await p.list_logs(campaign_id="cmp1")
    assert [r["id"] for r in newest_first] == ["l2", "l1"]
    assert [r["id"] for r in await p.list_logs(status="FAILED")] == ["l3"]


@pytest.mark.asyncio
async def test_upgrade_rejects_unknown_timestamp_column(tmp_path):
    p = Persistence(str(tmp_path / "cols.db"))
    await p.init_db()
    with pytest.raises(ValueError):
        await p.upgrade_log_status("m1", "DELIVERED", ["SENT"], "status", NOW)


@pytest.mark.asyncio
async def test_unreachable_store_raises_store_unavailable(tmp_path):
    p = Persistence(str(tmp_path / "missing-dir" / "db.sqlite"))
    with pytest.raises(StoreUnavailable):
        await p.init_db()
