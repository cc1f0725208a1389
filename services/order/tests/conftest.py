import os
import random
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="orderflow-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite:///{os.path.join(_tmpdir, 'orderflow.db')}"
os.environ["HOLD_STORE_ADAPTER"] = "memory"
os.environ["OUTBOX_PUBLISH_TO_KAFKA"] = "false"
os.environ["OUTBOX_PROCESSOR_ENABLED"] = "false"
os.environ["PAYMENT_CONSUMER_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"

import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402

from orderflow.db import models  # noqa: E402,F401
from orderflow.db.session import Base, SessionLocal, engine  # noqa: E402
from orderflow.inventory.holds.memory_adapter import InMemoryHoldStore  # noqa: E402
from orderflow.inventory.reservations import ReservationManager  # noqa: E402
from orderflow.outbox.store import Outbox  # noqa: E402


@event.listens_for(engine, "connect")
def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class FakeClock:
    """Monotonic seconds under test control."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def holds(clock):
    return InMemoryHoldStore(clock=clock)


@pytest.fixture
def reservations(holds):
    return ReservationManager(SessionLocal, holds, ttl_seconds=900, slot_ttl_seconds=900, default_slot_capacity=5)


@pytest.fixture
def outbox():
    return Outbox(max_retries=5, initial_backoff_ms=1000, max_backoff_ms=300_000, rng=random.Random(7))
