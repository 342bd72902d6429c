from contextlib import contextmanager

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from delayq.queue.errors import StoreUnavailable
from delayq.store.base import Store


class MongoStore(Store):
    """Store backed by a MongoDB collection through a pymongo client."""

    def __init__(self, client, database: str, collection: str):
        self.client = client
        self.database = database
        self.collection = collection

    @property
    def _collection(self):
        return self.client[self.database][self.collection]

    @contextmanager
    def _translate_errors(self, op: str):
        try:
            yield
        except PyMongoError as e:
            raise StoreUnavailable(f"MongoDB {op} on {self.database}.{self.collection} failed: {e}") from e

    def to_store_id(self, item_id: str):
        if ObjectId.is_valid(item_id):
            return ObjectId(item_id)
        return item_id

    def insert_one(self, document) -> str:
        with self._translate_errors("insert_one"):
            result = self._collection.insert_one(dict(document))
        return str(result.inserted_id)

    def find_one_and_update(self, query, update):
        with self._translate_errors("find_one_and_update"):
            return self._collection.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )

    def delete_one(self, query) -> int:
        with self._translate_errors("delete_one"):
            return self._collection.delete_one(query).deleted_count

    def count(self, query) -> int:
        with self._translate_errors("count_documents"):
            return self._collection.count_documents(query)

    def ensure_index(self, keys, name=None) -> str:
        # create_index is a no-op when an identical index already exists
        with self._translate_errors("create_index"):
            return self._collection.create_index(list(keys), name=name)

    def index_information(self):
        with self._translate_errors("index_information"):
            info = self._collection.index_information()
        return {name: [tuple(key) for key in spec["key"]] for name, spec in info.items()}
