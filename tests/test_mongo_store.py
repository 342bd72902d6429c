from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, OperationFailure

from delayq.queue.clock import ManualClock
from delayq.queue.errors import SetupFailed, StoreUnavailable
from delayq.queue.models import Item, ItemStatus
from delayq.queue.service import Scheduler
from delayq.store.mongo import MongoStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCollection:
    def __init__(self, error: Exception = None):
        self.error = error
        self.calls: list[tuple] = []
        self.next_document = None

    def _record(self, *call):
        self.calls.append(call)
        if self.error:
            raise self.error

    def insert_one(self, document):
        self._record("insert_one", document)
        return SimpleNamespace(inserted_id=ObjectId("65a1b2c3d4e5f60718293a4b"))

    def find_one_and_update(self, query, update, return_document=None):
        self._record("find_one_and_update", query, update, return_document)
        return self.next_document

    def delete_one(self, query):
        self._record("delete_one", query)
        return SimpleNamespace(deleted_count=1)

    def count_documents(self, query):
        self._record("count_documents", query)
        return 7

    def create_index(self, keys, name=None):
        self._record("create_index", keys, name)
        return name

    def index_information(self):
        self._record("index_information")
        return {
            "_id_": {"key": [("_id", 1)], "v": 2},
            "status_1_runDate_1_heartbeat_1": {"key": [("status", 1), ("runDate", 1), ("heartbeat", 1)], "v": 2},
        }


class FakeClient(dict):
    """client[db][collection] -> FakeCollection"""
    def __init__(self, collection: FakeCollection):
        super().__init__()
        self.collection = collection

    def __missing__(self, database):
        return {"delayed": self.collection}


@pytest.fixture
def collection():
    return FakeCollection()


@pytest.fixture
def mongo_store(collection):
    return MongoStore(FakeClient(collection), "jobs", "delayed")


def test_peek_uses_partial_update_and_returns_after(mongo_store, collection):
    collection.next_document = {"_id": ObjectId(), "status": "PROCESSING", "runDate": NOW, "heartbeat": NOW}
    scheduler = Scheduler(mongo_store, clock=ManualClock(NOW))

    item = scheduler.peek()

    name, query, update, return_document = collection.calls[0]
    assert name == "find_one_and_update"
    assert update == {"$set": {"status": "PROCESSING", "heartbeat": NOW}}
    assert query["runDate"] == {"$lte": NOW}
    assert return_document is ReturnDocument.AFTER
    assert item.id == str(collection.next_document["_id"])


def test_ids_are_object_ids(mongo_store, collection):
    object_id = "65a1b2c3d4e5f60718293a4b"

    assert mongo_store.insert_one({"status": "PENDING"}) == object_id
    assert mongo_store.delete_one({"_id": mongo_store.to_store_id(object_id)}) == 1
    assert collection.calls[-1] == ("delete_one", {"_id": ObjectId(object_id)})
    assert mongo_store.to_store_id("not-an-object-id") == "not-an-object-id"


def test_heartbeat_filters_on_object_id(mongo_store, collection):
    object_id = ObjectId()
    collection.next_document = {"_id": object_id, "status": "PROCESSING", "runDate": NOW, "heartbeat": NOW}
    scheduler = Scheduler(mongo_store, clock=ManualClock(NOW))
    item = scheduler.peek()

    scheduler.heartbeat(item)

    _, query, _, _ = collection.calls[-1]
    assert query == {"_id": object_id, "status": "PROCESSING", "heartbeat": NOW}


def test_count_uses_count_documents(mongo_store, collection):
    assert mongo_store.count({"status": "PENDING"}) == 7
    assert collection.calls == [("count_documents", {"status": "PENDING"})]


def test_setup_creates_compound_index(mongo_store, collection):
    Scheduler(mongo_store).setup()

    assert collection.calls == [(
        "create_index",
        [("status", 1), ("runDate", 1), ("heartbeat", 1)],
        "status_1_runDate_1_heartbeat_1",
    )]


def test_index_information_is_normalized(mongo_store):
    info = mongo_store.index_information()

    assert info["status_1_runDate_1_heartbeat_1"] == [("status", 1), ("runDate", 1), ("heartbeat", 1)]


def test_driver_errors_become_store_unavailable():
    store = MongoStore(FakeClient(FakeCollection(error=AutoReconnect("connection reset"))), "jobs", "delayed")

    with pytest.raises(StoreUnavailable) as exc:
        store.find_one_and_update({}, {"$set": {}})
    assert isinstance(exc.value.__cause__, AutoReconnect)


def test_index_creation_failure_fails_setup():
    store = MongoStore(FakeClient(FakeCollection(error=OperationFailure("IndexKeySpecsConflict"))), "jobs", "delayed")

    with pytest.raises(SetupFailed):
        Scheduler(store).setup()


def test_schedule_inserts_pending_document(mongo_store, collection):
    run_date = NOW - timedelta(seconds=1)
    scheduler = Scheduler(mongo_store, clock=ManualClock(NOW))

    scheduler.schedule(Item(
        id="65a1b2c3d4e5f60718293a4b",
        status=ItemStatus.PROCESSING,
        heartbeat=NOW,
        run_date=run_date,
        payload={"task": "render_video"},
    ))

    assert collection.calls == [
        ("insert_one", {"status": "PENDING", "runDate": run_date, "task": "render_video"})
    ]
