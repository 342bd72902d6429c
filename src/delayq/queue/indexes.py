import json
import logging

from delayq.queue.errors import SetupFailed, StoreUnavailable
from delayq.queue.models import HEARTBEAT_FIELD, RUN_DATE_FIELD, STATUS_FIELD

logger = logging.getLogger(__name__)

CLAIM_INDEX_KEYS = [(STATUS_FIELD, 1), (RUN_DATE_FIELD, 1), (HEARTBEAT_FIELD, 1)]


def index_name(keys) -> str:
    """Same naming scheme MongoDB uses by default, e.g. `status_1_runDate_1`."""
    return "_".join(f"{field}_{direction}" for field, direction in keys)


class IndexProvisioner:
    REQUIRED_INDEXES = [CLAIM_INDEX_KEYS]

    def __init__(self, store, log: logging.Logger = None):
        self.store = store
        self.logger = log or logger

    def ensure_indexes(self):
        for keys in self.REQUIRED_INDEXES:
            name = index_name(keys)
            try:
                self.store.ensure_index(keys, name=name)
            except StoreUnavailable as e:
                self.logger.error(json.dumps({"event": "index_failed", "index": name, "error": str(e)}))
                raise SetupFailed(f"Could not create index {name}: {e}") from e
            self.logger.info(json.dumps({"event": "index_ensured", "index": name}))
