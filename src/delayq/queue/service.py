import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from delayq.queue.clock import Clock, SystemClock
from delayq.queue.codec import Codec, DocumentCodec
from delayq.queue.errors import DecodeError, LeaseLost, RescheduleNotImplemented
from delayq.queue.indexes import IndexProvisioner
from delayq.queue.models import RESERVED_FIELDS, STATUS_FIELD, STORE_OWNED_FIELDS, Item, ItemStatus
from delayq.queue.queries import QueryBuilder
from delayq.store.base import Store

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_EXPIRATION_MS = 5 * 60 * 1000


class Scheduler:
    """
    Hands each due item to exactly one worker at a time.

    Mutual exclusion rests entirely on the store's atomic find-and-update:
    `peek` flips a claimable item to PROCESSING and stamps a fresh heartbeat in
    one step, and `heartbeat` only renews a lease whose last heartbeat is still
    the one the caller saw. A crashed worker's item becomes claimable again once
    its heartbeat is older than `heartbeat_expiration_ms`; there is no sweeper.

    Every call goes to the store; nothing is cached between calls.
    """
    def __init__(
        self,
        store: Store,
        codec: Codec = None,
        heartbeat_expiration_ms: int = DEFAULT_HEARTBEAT_EXPIRATION_MS,
        clock: Clock = None,
        log: logging.Logger = None,
    ):
        if heartbeat_expiration_ms <= 0:
            raise ValueError("heartbeat_expiration_ms must be positive")
        self.store = store
        self.codec = codec or DocumentCodec()
        self.heartbeat_expiration_ms = heartbeat_expiration_ms
        self.clock = clock or SystemClock()
        self.logger = log or logger
        self.queries = QueryBuilder(heartbeat_expiration_ms)

    def _log(self, level, event: str, **fields):
        self.logger.log(level, json.dumps({"event": event, **fields}, default=str))

    def _decode(self, document) -> Optional[Item]:
        if document is None:
            return None
        try:
            return self.codec.decode(document)
        except DecodeError as e:
            self._log(logging.ERROR, "decode_failed", collection=self.store.collection, error=str(e))
            raise

    def _store_id(self, item: Item):
        if item.id is None:
            raise ValueError("Item has no id; only items returned by the scheduler can be used here")
        return self.store.to_store_id(item.id)

    def setup(self):
        """Creates the indexes the claim query needs. Safe to call repeatedly."""
        IndexProvisioner(self.store, self.logger).ensure_indexes()

    def schedule(self, item: Item) -> str:
        """
        Inserts a new PENDING document for `item` and returns its id.
        Any id, status or heartbeat already set on the item is ignored.
        """
        document = self.codec.encode(item)
        for field in STORE_OWNED_FIELDS:
            document.pop(field, None)
        document[STATUS_FIELD] = ItemStatus.PENDING.value

        item_id = self.store.insert_one(document)
        self._log(logging.DEBUG, "scheduled", id=item_id, run_date=item.run_date)
        return item_id

    def peek(self) -> Optional[Item]:
        """
        Atomically claims one due item (pending, or processing with an expired
        lease) and returns it in PROCESSING with a fresh heartbeat.
        Returns None when nothing is claimable.
        """
        now = self.clock.now()
        document = self.store.find_one_and_update(
            self.queries.claim(now), self.queries.claim_update(now)
        )
        item = self._decode(document)
        if item is not None:
            self._log(logging.DEBUG, "claimed", id=item.id, heartbeat=now)
        return item

    def poll(self) -> Optional[Item]:
        """
        Claims an item and removes it from the store in one go.

        The item is only returned if this call's delete actually removed it.
        If somebody else deleted it between the claim and the delete, the
        caller gets None: only one caller may ever be told about an item.
        """
        item = self.peek()
        if item is None:
            return None

        if self.delete(item) > 0:
            return item

        self._log(logging.INFO, "poll_lost_race", id=item.id)
        return None

    def heartbeat(self, item: Item, attrs: Dict[str, Any] = None) -> Item:
        """
        Renews the lease on `item` and returns the refreshed snapshot.

        `item` must be the latest snapshot this worker got back from `peek` or
        `heartbeat`. `attrs` are payload fields written in the same update.

        Raises:
            LeaseLost: the item is gone, no longer PROCESSING, or its heartbeat
                moved on (another worker claimed it).
        """
        if attrs:
            reserved = RESERVED_FIELDS.intersection(attrs)
            if reserved:
                raise ValueError(f"Cannot update reserved fields {sorted(reserved)}")

        now = self.clock.now()
        document = self.store.find_one_and_update(
            self.queries.heartbeat(self._store_id(item), item.heartbeat),
            self.queries.heartbeat_update(now, attrs),
        )
        if document is None:
            self._log(logging.WARNING, "lease_lost", id=item.id, heartbeat=item.heartbeat)
            raise LeaseLost(item)
        return self._decode(document)

    def delete(self, item: Item) -> int:
        """Removes the item unconditionally. Returns the number of documents deleted (0 or 1)."""
        deleted = self.store.delete_one(self.queries.by_id(self._store_id(item)))
        self._log(logging.DEBUG, "deleted", id=item.id, deleted_count=deleted)
        return deleted

    def reschedule(self, item: Item) -> Item:
        # Undecided whether this should reset to PENDING, push runDate forward,
        # or re-enqueue after a failure, so it stays unimplemented.
        raise RescheduleNotImplemented("reschedule is not supported")

    def count_by_status(self, status: ItemStatus) -> int:
        return self.store.count(self.queries.by_status(status))

    def count_delayed(self) -> int:
        """Counts items whose runDate has already passed."""
        return self.store.count(self.queries.delayed(self.clock.now()))


class CallbackScheduler:
    """
    Non-blocking front for a Scheduler.

    Each operation runs on a worker thread and reports back through an
    `(on_success, on_failure)` pair. Exactly one of the two is invoked, once.
    The underlying Future is returned as well for callers that prefer it.
    """
    def __init__(self, scheduler: Scheduler, max_workers: int = 8):
        self.scheduler = scheduler
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="delayq")

    def _submit(self, fn: Callable, args, on_success: Callable = None, on_failure: Callable = None) -> Future:
        future = self._executor.submit(fn, *args)

        def _reply(done: Future):
            error = done.exception()
            if error is not None:
                if on_failure:
                    on_failure(error)
                return
            if on_success:
                try:
                    on_success(done.result())
                except Exception:
                    # A failing success callback must not trigger on_failure as well
                    self.scheduler.logger.exception("on_success callback raised")

        future.add_done_callback(_reply)
        return future

    def schedule(self, item: Item, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.schedule, (item,), on_success, on_failure)

    def peek(self, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.peek, (), on_success, on_failure)

    def poll(self, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.poll, (), on_success, on_failure)

    def heartbeat(self, item: Item, on_success=None, on_failure=None, attrs: Dict[str, Any] = None) -> Future:
        return self._submit(self.scheduler.heartbeat, (item, attrs), on_success, on_failure)

    def delete(self, item: Item, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.delete, (item,), on_success, on_failure)

    def reschedule(self, item: Item, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.reschedule, (item,), on_success, on_failure)

    def count_by_status(self, status: ItemStatus, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.count_by_status, (status,), on_success, on_failure)

    def count_delayed(self, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.count_delayed, (), on_success, on_failure)

    def setup(self, on_success=None, on_failure=None) -> Future:
        return self._submit(self.scheduler.setup, (), on_success, on_failure)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
