import json
import logging
import threading
from typing import Callable, Optional

from delayq.queue.errors import LeaseLost, SchedulerError
from delayq.queue.models import Item
from delayq.queue.service import Scheduler

logger = logging.getLogger(__name__)


class Worker:
    """
    Polling worker: claims an item, runs `handler(item)` while a background
    thread keeps the lease alive, then deletes the item.

    A handler that raises leaves the item where it is. Its lease runs out
    and the next peek (here or in another process) picks it up again.
    """
    def __init__(
        self,
        scheduler: Scheduler,
        handler: Callable[[Item], None],
        heartbeat_interval_s: float = None,
        poll_interval_s: float = 1.0,
    ):
        self.scheduler = scheduler
        self.handler = handler
        # Renew well before the lease can expire
        self.heartbeat_interval_s = heartbeat_interval_s or scheduler.heartbeat_expiration_ms / 1000.0 / 3
        self.poll_interval_s = poll_interval_s
        self._stop_event = threading.Event()

    def _keep_alive(self, lease: dict, done: threading.Event):
        while not done.wait(self.heartbeat_interval_s):
            try:
                lease["item"] = self.scheduler.heartbeat(lease["item"])
            except LeaseLost:
                lease["lost"] = True
                return
            except SchedulerError as e:
                # Store hiccup; the lease is still ours until it expires, so keep trying
                logger.error(json.dumps({"event": "heartbeat_failed", "id": lease["item"].id, "error": str(e)}))

    def run_once(self) -> Optional[Item]:
        """
        Processes at most one item. Returns it once deleted, or None if the
        queue had nothing due, the lease was lost mid-processing, or somebody
        else deleted the item before we could.
        Handler exceptions propagate after the heartbeat thread has stopped.
        """
        item = self.scheduler.peek()
        if item is None:
            return None

        lease = {"item": item, "lost": False}
        done = threading.Event()
        keep_alive = threading.Thread(target=self._keep_alive, args=(lease, done), daemon=True)
        keep_alive.start()
        try:
            self.handler(item)
        finally:
            done.set()
            keep_alive.join()

        if lease["lost"]:
            logger.warning(json.dumps({"event": "lease_lost_during_processing", "id": item.id}))
            return None

        if self.scheduler.delete(lease["item"]) == 0:
            logger.info(json.dumps({"event": "delete_lost_race", "id": item.id}))
            return None

        logger.info(json.dumps({"event": "processed", "id": item.id}))
        return lease["item"]

    def run_forever(self):
        logger.info(json.dumps({"event": "worker_startup", "collection": self.scheduler.store.collection}))
        while not self._stop_event.is_set():
            try:
                item = self.run_once()
            except Exception as e:
                logger.error(json.dumps({"event": "worker_iteration_failed", "error": repr(e)}))
                item = None

            if item is None:
                self._stop_event.wait(self.poll_interval_s)
        logger.info(json.dumps({"event": "worker_shutdown"}))

    def stop(self):
        self._stop_event.set()
