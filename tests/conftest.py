import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from switchboard.errors import ProviderUnavailable
from switchboard.telephony import ENDED_STATUSES, TelephonyProvider
from switchboard import twiml_builder


class FakeProvider(TelephonyProvider):
    """Records every provider request; individual operations can be made to fail."""

    def __init__(self):
        self.alerts = []
        self.redirects = []
        self.statuses = {}
        self.fail_redirect = False
        self.fail_fetch = False

    def alert(self, call_ref, destinations, timeout):
        self.alerts.append((call_ref, list(destinations), timeout))
        return twiml_builder.build_ring_twiml(destinations, timeout)

    def redirect(self, call_ref, twiml):
        if self.fail_redirect:
            raise ProviderUnavailable("redirect", "simulated outage")
        if self.statuses.get(call_ref) in ENDED_STATUSES:
            raise ProviderUnavailable("redirect", "not_found")
        self.redirects.append((call_ref, twiml))

    def fetch_status(self, call_ref):
        if self.fail_fetch:
            raise ProviderUnavailable("fetch", "simulated outage")
        return self.statuses.get(call_ref, "in-progress")


@pytest.fixture(autouse=True)
def _safe_test_config(monkeypatch):
    """Force deterministic, offline-safe config for tests.

    The repo loads .env on import; these overrides prevent real network calls
    (Twilio, the Celery broker) and keep retries fast.
    """
    from switchboard.config import config, Config

    overrides = {
        "TWILIO_ACCOUNT_SID": "",
        "TWILIO_AUTH_TOKEN": "",
        "TWILIO_CALLER_ID": "",
        "API_KEY": "",
        "BASE_URL": "https://switchboard.test",
        "RING_TIMEOUT_SECONDS": 30,
        "RING_GRACE_SECONDS": 15,
        "PARK_MAX_AGE_SECONDS": 1800,
        "STORE_RETRY_BASE_DELAY": 0.01,
        "PROVIDER_RETRY_BASE_DELAY": 0.0,
    }
    for key, value in overrides.items():
        monkeypatch.setattr(Config, key, value, raising=False)
        # Keep the instance in sync for any code that reads instance attributes directly.
        monkeypatch.setattr(config, key, value, raising=False)

    return config


@pytest.fixture(autouse=True)
def scheduled_timeouts(monkeypatch):
    """Capture ring timeouts instead of sending them to the Celery broker."""
    scheduled = []
    monkeypatch.setattr(
        "switchboard.ringing.schedule_ring_timeout",
        lambda call_id, countdown: scheduled.append((call_id, countdown)),
    )
    return scheduled


def _make_engine(url="sqlite://", connect_args=None, **kwargs):
    from switchboard.database import Base
    from switchboard import db_models  # noqa: F401

    engine = create_engine(url, connect_args={"check_same_thread": False, **(connect_args or {})}, **kwargs)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def engine():
    engine = _make_engine(poolclass=StaticPool)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed store with a real connection pool, for multi-threaded tests."""
    engine = _make_engine(f"sqlite:///{tmp_path / 'switchboard.db'}", connect_args={"timeout": 30})
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(session_factory, provider):
    from switchboard.database import get_db
    from switchboard.main import app
    from switchboard.telephony import get_provider

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_provider] = lambda: provider
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_agents(db):
    """Register agents; available unless told otherwise."""
    from switchboard.presence import PresenceRegistry

    def _make(*agent_ids, available=True):
        for agent_id in agent_ids:
            PresenceRegistry.register_agent(db, agent_id)
            if available:
                PresenceRegistry.set_available(db, agent_id, True)
        return list(agent_ids)

    return _make


@pytest.fixture
def ring_call(db):
    """Create an inbound call and ring every eligible agent. Returns the call id."""
    from switchboard.ringing import RingBroadcaster
    from switchboard.services import CallService

    counter = {"n": 0}

    def _ring(call_ref=None, from_number="+15550001111"):
        counter["n"] += 1
        call, _ = CallService.create_inbound(db, call_ref or f"CA{counter['n']:04d}", from_number=from_number, to_number="+15559990000")
        RingBroadcaster.start_ring(db, call)
        return call.id

    return _ring
