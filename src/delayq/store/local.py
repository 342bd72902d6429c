import copy
import fcntl
import json
import logging
import operator
import os
import random
import time
import uuid
from contextlib import contextmanager
from datetime import datetime

from delayq.queue.errors import StoreUnavailable
from delayq.store.base import Store

logger = logging.getLogger(__name__)

_MISSING = object()

_COMPARISONS = {
    "$lt": operator.lt,
    "$lte": operator.le,
    "$gt": operator.gt,
    "$gte": operator.ge,
}


class ConflictError(Exception):
    pass


def _encode_value(value):
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_object(obj):
    if len(obj) == 1 and "$date" in obj:
        try:
            return datetime.fromisoformat(obj["$date"])
        except (TypeError, ValueError):
            # A payload dict that merely looks like an encoded date
            return obj
    return obj


class LocalCASObject:
    """
    A local concurrency-safe wrapper for a versioned JSON object.
    Emulates optimistic concurrency control found in remote object stores
    using a dedicated lock file and atomic replaces.
    """
    def __init__(self, filename_base):
        self.data_file = f"{filename_base}.json"
        self.meta_file = f"{filename_base}.meta"
        self.lock_file = f"{filename_base}.lock"

        # Initialize if they don't exist
        if not os.path.exists(self.meta_file):
            self._write_meta(0)
        if not os.path.exists(self.data_file):
            self._write_data({})

    def _write_meta(self, version):
        tmp_meta = f"{self.meta_file}.tmp"
        with open(tmp_meta, 'w') as f:
            json.dump({"version": version}, f)
        os.replace(tmp_meta, self.meta_file)

    def _write_data(self, data):
        tmp_data = f"{self.data_file}.tmp"
        with open(tmp_data, 'w') as f:
            json.dump(data, f, default=_encode_value)
        os.replace(tmp_data, self.data_file)

    def _read_version(self):
        try:
            with open(self.meta_file, 'r') as f:
                return json.load(f).get("version", 0)
        except (FileNotFoundError, json.JSONDecodeError):
            return 0

    def read(self):
        """
        Read the current data and version.
        Returns:
            (dict, int): The JSON data and the current version.
        """
        # Shared lock so we never see data from one version and meta from another
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_SH)
            try:
                version = self._read_version()
                try:
                    with open(self.data_file, 'r') as f:
                        data = json.load(f, object_hook=_decode_object)
                except (FileNotFoundError, json.JSONDecodeError):
                    data = {}
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return data, version

    def cas_write(self, new_data, expected_version):
        """
        Attempts to write new_data only if the current version matches expected_version.
        Returns:
            (True, new_version) if successful.
            (False, current_version) if a conflict occurred.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                current_version = self._read_version()
                if current_version != expected_version:
                    return False, current_version

                new_version = current_version + 1
                self._write_data(new_data)
                self._write_meta(new_version)
                return True, new_version
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def update_with_retry(self, update_fn, max_retries=10, base_delay=0.01, max_delay=0.25):
        """
        Apply update_fn with CAS retries, exponential backoff, and jitter.

        update_fn receives a fresh copy of the data on every attempt and returns
        the modified dict, or None when there is nothing to write. In the latter
        case the read itself is the linearization point and no write happens.
        """
        for attempt in range(max_retries):
            data, version = self.read()

            new_data = update_fn(data)
            if new_data is None:
                return data, version

            ok, new_version = self.cas_write(new_data, version)
            if ok:
                logger.debug(f"Successfully updated to version {new_version} on attempt {attempt + 1}")
                return new_data, new_version

            delay = min(base_delay * (2 ** attempt), max_delay) + random.uniform(0, 0.05)
            logger.debug(f"Conflict on version {version}. Retrying in {delay:.3f}s (Attempt {attempt + 1}/{max_retries})")
            time.sleep(delay)

        raise ConflictError(f"Failed to update after {max_retries} attempts.")


def matches(document, query) -> bool:
    """Evaluates the subset of the MongoDB query language the scheduler relies on."""
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(document, clause) for clause in condition):
                return False
        elif key == "$and":
            if not all(matches(document, clause) for clause in condition):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported top-level query operator {key}")
        elif not _match_field(document.get(key, _MISSING), condition):
            return False
    return True


def _match_field(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        return all(_apply_operator(value, op, operand) for op, operand in condition.items())
    return _equals(value, condition)


def _equals(value, expected):
    # Like MongoDB, {field: None} also matches documents lacking the field
    if expected is None:
        return value is None or value is _MISSING
    if value is _MISSING:
        return False
    return value == expected


def _apply_operator(value, op, operand):
    if op == "$eq":
        return _equals(value, operand)
    if op == "$ne":
        return not _equals(value, operand)
    if op == "$in":
        return any(_equals(value, candidate) for candidate in operand)
    if op in _COMPARISONS:
        if value is _MISSING or value is None or operand is None:
            return False
        try:
            return _COMPARISONS[op](value, operand)
        except TypeError:
            return False
    raise ValueError(f"Unsupported query operator {op}")


def apply_update(document, update):
    if not update or not all(key.startswith("$") for key in update):
        raise ValueError("update only works with $ operators")
    for op, fields in update.items():
        if op != "$set":
            raise ValueError(f"Unsupported update operator {op}")
        document.update(fields)


class LocalDocumentStore(Store):
    """
    A single collection kept in a JSON file on local disk.

    Every mutation goes through one CAS write, so the match and the update of
    find_one_and_update can never interleave with another writer, whether it
    lives in another thread or another process.
    """
    def __init__(self, filename_base, database="delayq", collection="items", max_retries=50):
        self.database = database
        self.collection = collection
        self.max_retries = max_retries
        self.cas = LocalCASObject(f"{filename_base}-{database}-{collection}")

    @contextmanager
    def _translate_errors(self, op: str):
        try:
            yield
        except (ConflictError, OSError) as e:
            raise StoreUnavailable(f"Local store {op} failed: {e}") from e

    def _update(self, update_fn):
        self.cas.update_with_retry(update_fn, max_retries=self.max_retries)

    def _documents(self):
        data, _ = self.cas.read()
        return data.get("documents", [])

    def insert_one(self, document) -> str:
        new_document = copy.deepcopy(document)
        new_document.setdefault("_id", uuid.uuid4().hex)

        def _insert(data):
            data.setdefault("documents", []).append(new_document)
            return data

        with self._translate_errors("insert_one"):
            self._update(_insert)
        return str(new_document["_id"])

    def find_one_and_update(self, query, update):
        result = None

        def _find_and_update(data):
            nonlocal result
            result = None  # Reset on retry

            for document in data.get("documents", []):
                if matches(document, query):
                    apply_update(document, update)
                    result = copy.deepcopy(document)
                    return data
            return None

        with self._translate_errors("find_one_and_update"):
            self._update(_find_and_update)
        return result

    def delete_one(self, query) -> int:
        deleted = 0

        def _delete(data):
            nonlocal deleted
            deleted = 0

            documents = data.get("documents", [])
            for i, document in enumerate(documents):
                if matches(document, query):
                    del documents[i]
                    deleted = 1
                    return data
            return None

        with self._translate_errors("delete_one"):
            self._update(_delete)
        return deleted

    def count(self, query) -> int:
        with self._translate_errors("count"):
            return sum(1 for document in self._documents() if matches(document, query))

    def ensure_index(self, keys, name=None) -> str:
        keys = [[field, direction] for field, direction in keys]
        name = name or "_".join(f"{field}_{direction}" for field, direction in keys)
        conflict = None

        def _ensure(data):
            nonlocal conflict
            conflict = None

            indexes = data.setdefault("indexes", {})
            existing = indexes.get(name)
            if existing == keys:
                return None
            if existing is not None:
                conflict = existing
                return None
            indexes[name] = keys
            return data

        with self._translate_errors("ensure_index"):
            self._update(_ensure)
        if conflict is not None:
            raise StoreUnavailable(f"Index {name} already exists with different keys {conflict}")
        return name

    def index_information(self):
        with self._translate_errors("index_information"):
            data, _ = self.cas.read()
        return {
            name: [(field, direction) for field, direction in keys]
            for name, keys in data.get("indexes", {}).items()
        }
