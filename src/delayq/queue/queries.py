from datetime import datetime, timedelta
from typing import Any, Dict

from delayq.queue.models import (
    HEARTBEAT_FIELD,
    ID_FIELD,
    RUN_DATE_FIELD,
    STATUS_FIELD,
    ItemStatus,
)


class QueryBuilder:
    """Builds the filters the scheduler hands to the store."""

    def __init__(self, heartbeat_expiration_ms: int):
        self.heartbeat_expiration = timedelta(milliseconds=heartbeat_expiration_ms)

    def claim(self, now: datetime) -> Dict[str, Any]:
        """
        Matches an item that is due and either pending, or processing with a
        stale (or missing) heartbeat.
        """
        expired_before = now - self.heartbeat_expiration
        return {
            RUN_DATE_FIELD: {"$lte": now},
            "$or": [
                {STATUS_FIELD: ItemStatus.PENDING.value},
                {
                    STATUS_FIELD: ItemStatus.PROCESSING.value,
                    HEARTBEAT_FIELD: {"$lte": expired_before},
                },
                {STATUS_FIELD: ItemStatus.PROCESSING.value, HEARTBEAT_FIELD: None},
            ],
        }

    def claim_update(self, now: datetime) -> Dict[str, Any]:
        # Partial update: the rest of the document (user payload) must survive
        return {
            "$set": {
                STATUS_FIELD: ItemStatus.PROCESSING.value,
                HEARTBEAT_FIELD: now,
            }
        }

    def heartbeat(self, store_id, heartbeat: datetime) -> Dict[str, Any]:
        """
        Matches only while the caller still holds the lease: if another worker
        claimed the item since, its heartbeat has moved on and this fails.
        """
        return {
            ID_FIELD: store_id,
            STATUS_FIELD: ItemStatus.PROCESSING.value,
            HEARTBEAT_FIELD: heartbeat,
        }

    def heartbeat_update(self, now: datetime, attrs: Dict[str, Any] = None) -> Dict[str, Any]:
        fields = dict(attrs or {})
        fields[HEARTBEAT_FIELD] = now
        return {"$set": fields}

    def by_id(self, store_id) -> Dict[str, Any]:
        return {ID_FIELD: store_id}

    def by_status(self, status: ItemStatus) -> Dict[str, Any]:
        return {STATUS_FIELD: ItemStatus(status).value}

    def delayed(self, now: datetime) -> Dict[str, Any]:
        return {RUN_DATE_FIELD: {"$lt": now}}
