from datetime import datetime, timezone

import pytest

from delayq.queue.clock import ManualClock
from delayq.queue.service import Scheduler
from delayq.store.local import LocalDocumentStore

HEARTBEAT_EXPIRATION_MS = 60_000


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    return LocalDocumentStore(str(tmp_path / "queue"))


@pytest.fixture
def scheduler(store, clock):
    return Scheduler(store, heartbeat_expiration_ms=HEARTBEAT_EXPIRATION_MS, clock=clock)
