import asyncio

import pytest

from email_dispatch.collaborators import UserRecord
from email_dispatch.core import DispatchCore
from email_dispatch.errors import IdentityNotFound, IdentityUnavailable
from email_dispatch.prometheus import DispatchMetrics


class DummyIdentity:
    def __init__(self, users=None):
        self.users = dict(users or {})
        self.unavailable = False
        self.calls = []

    async def get_user(self, user_id):
        self.calls.append(user_id)
        if self.unavailable:
            raise IdentityUnavailable("identity service down")
        user = self.users.get(user_id)
        if user is None:
            raise IdentityNotFound(f"User '{user_id}' not found")
        return user


class DummyTransport:
    def __init__(self):
        self.sent = []
        self.failures = {}
        self.delay = 0.0

    async def send(self, to, subject, html, *, sender, reply_to=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        exc = self.failures.get(to)
        if exc is not None:
            raise exc
        self.sent.append({"to": to, "subject": subject, "html": html, "sender": sender, "reply_to": reply_to})
        return f"msg-{len(self.sent)}@test.local"


@pytest.fixture
def users():
    return {
        "u1": UserRecord("u1", "alice@example.com", first_name="Alice"),
        "u2": UserRecord("u2", "bob@example.com", username="bob"),
        "u3": UserRecord("u3", "carol@example.com", first_name="Carol"),
        "nomail": UserRecord("nomail", None, first_name="Ghost"),
    }


@pytest.fixture
def identity(users):
    return DummyIdentity(users)


@pytest.fixture
def transport():
    return DummyTransport()


@pytest.fixture
def metrics():
    return DispatchMetrics()


@pytest.fixture
def core(tmp_path, identity, transport, metrics):
    """A DispatchCore in test mode; tests call ``await core.init()``."""
    return DispatchCore(
        db_path=str(tmp_path / "dispatch.db"),
        identity=identity,
        transport=transport,
        metrics=metrics,
        pool_size=4,
        provider_timeout=1.0,
        test_mode=True,
    )
