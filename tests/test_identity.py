import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from email_dispatch.errors import IdentityNotFound, IdentityUnavailable
from email_dispatch.identity import HttpIdentityLookup
from email_dispatch.models import EmailCampaign, EmailType
from email_dispatch.persistence import Persistence
from email_dispatch.resolver import RecipientResolver

USERS = {
    "u1": {"email": "alice@example.com", "firstName": "Alice"},
    "u2": {"email": "bob@example.com", "username": "bob"},
    "u3": {"email": "carol@example.com", "first_name": "Carol"},
}

# Canned non-200 replies keyed by user id.
REPLIES = {
    "broken": (503, {"error": "boom"}),
    "gone": (410, {"error": "gone"}),
    "invalid": (400, {"error": "bad id"}),
    "unprocessable": (422, {"error": "bad id"}),
    "denied": (401, {"error": "bad token"}),
    "throttled": (429, {"error": "slow down"}),
    "listbody": (200, ["not", "an", "object"]),
}


@pytest_asyncio.fixture
async def identity_server():
    seen_headers = []

    async def get_user(request):
        seen_headers.append(request.headers.get("Authorization"))
        user_id = request.match_info["user_id"]
        if user_id in REPLIES:
            status, body = REPLIES[user_id]
            return web.json_response(body, status=status)
        if user_id == "notjson":
            return web.Response(text="<html>oops</html>", content_type="text/html")
        if user_id not in USERS:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(USERS[user_id])

    app = web.Application()
    app.router.add_get("/users/{user_id}", get_user)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.seen_headers = seen_headers
    try:
        yield server
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_fetches_user_with_bearer_token(identity_server):
    lookup = HttpIdentityLookup(str(identity_server.make_url("/")), token="id-token")

    user = await lookup.get_user("u1")

    assert user.user_id == "u1"
    assert user.email == "alice@example.com"
    assert user.first_name == "Alice"
    assert identity_server.seen_headers == ["Bearer id-token"]


@pytest.mark.asyncio
async def test_username_without_first_name(identity_server):
    lookup = HttpIdentityLookup(str(identity_server.make_url("/")))

    user = await lookup.get_user("u2")

    assert user.first_name is None
    assert user.username == "bob"
    assert identity_server.seen_headers == [None]


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["ghost", "gone", "invalid", "unprocessable", "listbody", "notjson"])
async def test_per_user_failures_raise_not_found(identity_server, user_id):
    lookup = HttpIdentityLookup(str(identity_server.make_url("/")))
    with pytest.raises(IdentityNotFound):
        await lookup.get_user(user_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["broken", "denied", "throttled"])
async def test_service_wide_failures_raise_unavailable(identity_server, user_id):
    lookup = HttpIdentityLookup(str(identity_server.make_url("/")))
    with pytest.raises(IdentityUnavailable):
        await lookup.get_user(user_id)


@pytest.mark.asyncio
async def test_unreachable_service_raises_unavailable(unused_tcp_port):
    lookup = HttpIdentityLookup(f"http://127.0.0.1:{unused_tcp_port}", timeout=2.0)
    with pytest.raises(IdentityUnavailable):
        await lookup.get_user("u1")


@pytest.mark.asyncio
async def test_resolver_drops_users_the_service_rejects(tmp_path, identity_server):
    p = Persistence(str(tmp_path / "identity.db"))
    await p.init_db()
    resolver = RecipientResolver(p, HttpIdentityLookup(str(identity_server.make_url("/"))))
    campaign = EmailCampaign(
        id="cmp1",
        name="Sale",
        type=EmailType.SALES_ANNOUNCEMENT,
        subject="Sale",
        target_user_ids=["u1", "gone", "listbody", "u3"],
    )

    recipients = await resolver.resolve(campaign)

    assert [r.user_id for r in recipients] == ["u1", "u3"]
