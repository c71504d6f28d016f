from datetime import datetime, timedelta, timezone

import pytest

from passkey_server.ceremonies import PasskeyCeremonies
from passkey_server.config import RelyingPartySettings
from passkey_server.storage import MemoryStore, SqliteStore

from .authenticator import ORIGIN, RP_ID, SoftwareAuthenticator


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings():
    return RelyingPartySettings(rp_id=RP_ID, rp_name="Test RP", origin=ORIGIN)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        backend = MemoryStore()
    else:
        backend = SqliteStore(str(tmp_path / "webauthn.db"))
    yield backend
    backend.close()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alice(store):
    return store.create_user("alice")


@pytest.fixture
def ceremonies(settings, store):
    return PasskeyCeremonies(settings, store)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def client():
    from passkey_server.app import app, configure_app

    app.config.update(
        TESTING=True,
        SECRET_KEY="test-secret",
        PASSKEY_RP_ID=RP_ID,
        PASSKEY_RP_NAME="Test RP",
        PASSKEY_ORIGIN=ORIGIN,
        PASSKEY_SWEEP_INTERVAL=0,
        PASSKEY_EXPOSE_DEBUG_LOGS=True,
    )
    configure_app(MemoryStore())
    with app.test_client() as test_client:
        yield test_client
