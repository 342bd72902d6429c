from delayq.config import QueueSettings, get_settings
from delayq.queue.clock import Clock
from delayq.queue.codec import Codec
from delayq.queue.service import Scheduler


def build_store(config: QueueSettings, client=None):
    if config.backend == "local":
        from delayq.store.local import LocalDocumentStore

        return LocalDocumentStore(
            config.local_storage_filename,
            database=config.database,
            collection=config.collection,
            max_retries=config.cas_max_retries,
        )

    from delayq.store.mongo import MongoStore

    if client is None:
        from pymongo import MongoClient

        client = MongoClient(config.mongo_url, tz_aware=True)
    return MongoStore(client, config.database, config.collection)


def build_scheduler(config: QueueSettings = None, client=None, codec: Codec = None, clock: Clock = None) -> Scheduler:
    """
    Wires a Scheduler from settings. `client` is an existing pymongo client
    to reuse; it is ignored by the local backend.
    """
    config = config or get_settings()
    return Scheduler(
        build_store(config, client),
        codec=codec,
        heartbeat_expiration_ms=config.heartbeat_expiration_ms,
        clock=clock,
    )
