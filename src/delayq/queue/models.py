from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

# Field names as persisted in the store
ID_FIELD = "_id"
STATUS_FIELD = "status"
RUN_DATE_FIELD = "runDate"
HEARTBEAT_FIELD = "heartbeat"

RESERVED_FIELDS = frozenset({ID_FIELD, STATUS_FIELD, RUN_DATE_FIELD, HEARTBEAT_FIELD})
# Decided by the scheduler, never by the caller
STORE_OWNED_FIELDS = frozenset({ID_FIELD, STATUS_FIELD, HEARTBEAT_FIELD})


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Item(BaseModel):
    """
    One scheduled unit of work.

    `id`, `status` and `heartbeat` are owned by the store and only filled in
    on items handed back by the scheduler. Subclasses may declare extra fields;
    they are persisted next to the core fields. Anything else goes in `payload`.
    """
    id: Optional[str] = None
    status: Optional[ItemStatus] = None
    run_date: datetime
    heartbeat: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("run_date", "heartbeat")
    @classmethod
    def _normalize_tz(cls, value):
        return as_utc(value)


CORE_ATTRIBUTES = frozenset({"id", "status", "run_date", "heartbeat", "payload"})
