from typing import Any, Dict, Type

from delayq.queue.errors import DecodeError
from delayq.queue.models import (
    CORE_ATTRIBUTES,
    HEARTBEAT_FIELD,
    ID_FIELD,
    RESERVED_FIELDS,
    RUN_DATE_FIELD,
    STATUS_FIELD,
    Item,
)


class Codec:
    def encode(self, item: Item) -> Dict[str, Any]:
        raise NotImplementedError

    def decode(self, document: Dict[str, Any]) -> Item:
        raise NotImplementedError


class DocumentCodec(Codec):
    """
    Maps items to the stored document shape and back.

    Fields declared on `item_class` beyond the core ones are stored as
    top-level document fields. Undeclared fields round-trip through
    `Item.payload`. The scheduler decides `_id`, `status` and `heartbeat`,
    so encode never emits them.
    """
    def __init__(self, item_class: Type[Item] = Item):
        self.item_class = item_class
        self._declared = set(item_class.model_fields) - CORE_ATTRIBUTES

    def encode(self, item: Item) -> Dict[str, Any]:
        document = {k: v for k, v in item.payload.items() if k not in RESERVED_FIELDS}
        for name in self._declared:
            if name not in RESERVED_FIELDS:
                document[name] = getattr(item, name)
        document[RUN_DATE_FIELD] = item.run_date
        return document

    def decode(self, document: Dict[str, Any]) -> Item:
        try:
            extras = {}
            payload = {}
            for key, value in document.items():
                if key in RESERVED_FIELDS:
                    continue
                if key in self._declared:
                    extras[key] = value
                else:
                    payload[key] = value

            return self.item_class(
                id=str(document[ID_FIELD]),
                status=document[STATUS_FIELD],
                run_date=document[RUN_DATE_FIELD],
                heartbeat=document.get(HEARTBEAT_FIELD),
                payload=payload,
                **extras,
            )
        except (KeyError, TypeError, ValueError) as e:
            # pydantic's ValidationError is a ValueError
            raise DecodeError(f"Cannot decode document {document.get(ID_FIELD)!r}: {e}") from e
