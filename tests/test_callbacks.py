from datetime import timedelta

import pytest

from delayq.queue.errors import LeaseLost, RescheduleNotImplemented
from delayq.queue.models import Item, ItemStatus
from delayq.queue.service import CallbackScheduler


class Recorder:
    def __init__(self):
        self.successes = []
        self.failures = []

    def on_success(self, value=None):
        self.successes.append(value)

    def on_failure(self, error):
        self.failures.append(error)


@pytest.fixture
def callbacks(scheduler):
    wrapper = CallbackScheduler(scheduler, max_workers=4)
    yield wrapper
    wrapper.shutdown()


def test_schedule_then_peek(callbacks, clock):
    scheduled = Recorder()
    peeked = Recorder()

    callbacks.schedule(Item(run_date=clock.now() - timedelta(seconds=1)), scheduled.on_success, scheduled.on_failure).result()
    callbacks.peek(peeked.on_success, peeked.on_failure).result()
    callbacks.shutdown()

    assert len(scheduled.successes) == 1
    assert peeked.successes[0].status is ItemStatus.PROCESSING
    assert peeked.failures == []


def test_empty_peek_is_a_success(callbacks):
    recorder = Recorder()

    callbacks.peek(recorder.on_success, recorder.on_failure)
    callbacks.shutdown()

    assert recorder.successes == [None]
    assert recorder.failures == []


def test_lost_lease_goes_to_on_failure(callbacks, scheduler, clock):
    scheduler.schedule(Item(run_date=clock.now()))
    item = scheduler.peek()
    scheduler.delete(item)
    recorder = Recorder()

    callbacks.heartbeat(item, recorder.on_success, recorder.on_failure)
    callbacks.shutdown()

    assert recorder.successes == []
    assert len(recorder.failures) == 1
    assert isinstance(recorder.failures[0], LeaseLost)


def test_counts_and_delete(callbacks, scheduler, clock):
    scheduler.schedule(Item(run_date=clock.now() - timedelta(seconds=1)))
    item = scheduler.peek()
    counted = Recorder()
    deleted = Recorder()

    callbacks.count_by_status(ItemStatus.PROCESSING, counted.on_success, counted.on_failure).result()
    callbacks.count_delayed(counted.on_success, counted.on_failure).result()
    callbacks.delete(item, deleted.on_success, deleted.on_failure).result()
    callbacks.shutdown()

    assert counted.successes == [1, 1]
    assert deleted.successes == [1]


def test_reschedule_reports_not_implemented(callbacks, clock):
    recorder = Recorder()

    callbacks.reschedule(Item(id="x", run_date=clock.now()), recorder.on_success, recorder.on_failure)
    callbacks.shutdown()

    assert isinstance(recorder.failures[0], RescheduleNotImplemented)


def test_failing_success_callback_does_not_call_on_failure(callbacks):
    failures = []

    def explode(_):
        raise RuntimeError("callback bug")

    callbacks.setup(explode, failures.append)
    callbacks.shutdown()

    assert failures == []


def test_future_is_returned(callbacks, store):
    future = callbacks.setup()

    assert future.result() is None
    assert "status_1_runDate_1_heartbeat_1" in store.index_information()
