import asyncio

import pytest

from email_dispatch.errors import IdentityUnavailable, ResolutionFailed
from email_dispatch.models import EmailCampaign, EmailType
from email_dispatch.persistence import Persistence
from email_dispatch.resolver import RecipientResolver

NOW = "2025-01-31T10:00:00.000000+00:00"


def campaign(**overrides):
    data = {
        "id": "cmp1",
        "name": "Sale",
        "type": EmailType.SALES_ANNOUNCEMENT,
        "subject": "Sale",
        "template_data": {"saleEnds": "Sunday"},
    }
    data.update(overrides)
    return EmailCampaign(**data)


async def make_persistence(tmp_path):
    p = Persistence(str(tmp_path / "resolver.db"))
    await p.init_db()
    return p


@pytest.mark.asyncio
async def test_explicit_targets_are_deduplicated_and_filtered(tmp_path, identity):
    p = await make_persistence(tmp_path)
    resolver = RecipientResolver(p, identity)

    recipients = await resolver.resolve(campaign(target_user_ids=["u2", "u1", "u2", "ghost", "nomail"]))

    assert [r.user_id for r in recipients] == ["u2", "u1"]
    assert recipients[0].email == "bob@example.com"
    assert recipients[0].template_data == {"saleEnds": "Sunday", "userName": "bob"}
    assert recipients[1].template_data["userName"] == "Alice"
    assert identity.calls.count("u2") == 1


@pytest.mark.asyncio
async def test_target_all_uses_subscribed_preferences(tmp_path, identity):
    p = await make_persistence(tmp_path)
    await p.ensure_preference("u1", NOW)
    await p.ensure_preference("u2", NOW)
    await p.upsert_preference("u3", {"unsubscribed_all": True}, NOW)
    resolver = RecipientResolver(p, identity)

    recipients = await resolver.resolve(campaign(target_all=True, target_user_ids=["ignored"]))

    assert [r.user_id for r in recipients] == ["u1", "u2"]
    assert "u3" not in identity.calls


@pytest.mark.asyncio
async def test_identity_outage_fails_resolution(tmp_path, identity):
    p = await make_persistence(tmp_path)
    identity.unavailable = True
    resolver = RecipientResolver(p, identity)

    with pytest.raises(ResolutionFailed):
        await resolver.resolve(campaign(target_user_ids=["u1", "u2"]))


@pytest.mark.asyncio
async def test_lookups_are_bounded_by_pool_size(tmp_path, users):
    p = await make_persistence(tmp_path)
    in_flight = 0
    peak = 0

    class SlowIdentity:
        async def get_user(self, user_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return users["u1"]

    resolver = RecipientResolver(p, SlowIdentity(), pool_size=2)
    recipients = await resolver.resolve(campaign(target_user_ids=[f"user{i}" for i in range(6)]))

    assert len(recipients) == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_unexpected_lookup_error_drops_only_that_user(tmp_path, identity):
    p = await make_persistence(tmp_path)

    class FlakyIdentity:
        async def get_user(self, user_id):
            if user_id == "u2":
                raise AttributeError("'list' object has no attribute 'get'")
            return await identity.get_user(user_id)

    resolver = RecipientResolver(p, FlakyIdentity())
    recipients = await resolver.resolve(campaign(target_user_ids=["u1", "u2", "u3"]))

    assert [r.user_id for r in recipients] == ["u1", "u3"]


@pytest.mark.asyncio
async def test_outage_cancels_pending_lookups(tmp_path, users):
    p = await make_persistence(tmp_path)
    finished = []

    class HalfDownIdentity:
        async def get_user(self, user_id):
            if user_id == "u1":
                raise IdentityUnavailable("identity service down")
            await asyncio.sleep(0.2)
            finished.append(user_id)
            return users[user_id]

    resolver = RecipientResolver(p, HalfDownIdentity(), pool_size=4)
    with pytest.raises(ResolutionFailed):
        await resolver.resolve(campaign(target_user_ids=["u1", "u2", "u3"]))

    await asyncio.sleep(0.3)
    assert finished == []
