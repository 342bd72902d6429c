from typing import Any, Dict, List, Optional, Tuple

IndexKeys = List[Tuple[str, int]]


class Store:
    """
    Capability over a single collection of a document store.

    Implementations must make `find_one_and_update` atomic: the match and the
    update happen as one step, so two concurrent callers can never both get
    the same document back. Transport failures are raised as StoreUnavailable.
    """
    database: str
    collection: str

    def insert_one(self, document: Dict[str, Any]) -> str:
        raise NotImplementedError

    def find_one_and_update(self, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Returns the document as it is after the update, or None if nothing matched."""
        raise NotImplementedError

    def delete_one(self, query: Dict[str, Any]) -> int:
        raise NotImplementedError

    def count(self, query: Dict[str, Any]) -> int:
        raise NotImplementedError

    def ensure_index(self, keys: IndexKeys, name: str = None) -> str:
        raise NotImplementedError

    def index_information(self) -> Dict[str, IndexKeys]:
        raise NotImplementedError

    def to_store_id(self, item_id: str) -> Any:
        return item_id
