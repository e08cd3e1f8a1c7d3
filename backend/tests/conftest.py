"""
Shared fixtures: in-memory SQLite (one shared connection), a frozen clock anchored at the real
current time (tokens are also checked against the wall clock), and fake probe / notifier.
"""
import os

# Must be set before anything imports app.config / app.db.session
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FRONTEND_URL"] = "https://waitlist.test"
os.environ["WAITLIST_API_KEY"] = "test-api-key"
os.environ["WAITLIST_CRON_API_KEY"] = "test-cron-key"
os.environ["TOKEN_ENCRYPTION_KEY"] = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["SMTP_USER"] = ""

from datetime import datetime, timedelta

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from app.core.clock import utc_now
from app.core.errors import NotifierError
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.models import WaitlistCalendarConfig, WaitlistEntry, WaitlistSlot, WaitlistToken  # noqa: F401
from app.scheduler.waitlist_scheduler import WaitlistScheduler, slot_job_id
from app.services.availability.types import AvailabilityResult

OWNER = "owner-1"
PHONE_A = "+33611111111"
PHONE_B = "+33622222222"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProbe:
    """Availability answer set by the test; records every window asked about."""

    def __init__(self):
        self.available = False
        self.error: Exception | None = None
        self.calls: list[tuple[str, datetime, datetime]] = []

    def check_availability(self, owner_id, window_start, window_end):
        self.calls.append((owner_id, window_start, window_end))
        if self.error is not None:
            raise self.error
        return AvailabilityResult(is_available=self.available)


class FakeNotifier:
    def __init__(self):
        self.joins: list[tuple[int, str]] = []
        self.availabilities: list[tuple[int, int, str]] = []
        self.fail = False

    def send_join_message(self, entry, link):
        if self.fail:
            raise NotifierError("sms gateway down")
        self.joins.append((entry.id, link))
        return f"SMjoin{entry.id}"

    def send_availability_message(self, entry, slot, link):
        if self.fail:
            raise NotifierError("sms gateway down")
        self.availabilities.append((entry.id, slot.id, link))
        return f"SMavail{entry.id}"


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(utc_now().replace(microsecond=0))


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def probe_owners():
    """Owners that have a probe configured. Tests remove an owner to simulate 'no calendar'."""
    return {OWNER}


@pytest.fixture
def waitlist_scheduler(probe, notifier, clock, probe_owners):
    """WaitlistScheduler on a never-started BackgroundScheduler: jobs are registered but only run when a test fires them."""
    aps = BackgroundScheduler(timezone="UTC")
    ws = WaitlistScheduler(
        aps,
        notifier,
        session_factory=SessionLocal,
        probe_resolver=lambda _db, owner_id: probe if owner_id in probe_owners else None,
        clock=clock,
        internal=True,
    )
    yield ws
    ws.shutdown()


@pytest.fixture
def fire_timer(waitlist_scheduler):
    """Run a slot's pending APScheduler job the way the scheduler thread would."""

    def _fire(slot_id: int):
        job = waitlist_scheduler._scheduler.get_job(slot_job_id(slot_id))
        assert job is not None, f"slot {slot_id} has no timer"
        return job.func(*job.args)

    return _fire
