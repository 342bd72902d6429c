class SchedulerError(Exception):
    pass


class StoreUnavailable(SchedulerError):
    """The document store could not be reached or rejected the operation."""


class DecodeError(SchedulerError):
    """A stored document could not be turned back into an item."""


class LeaseLost(SchedulerError):
    """
    The heartbeat guard did not match: the item was deleted, moved out of
    PROCESSING, or another worker renewed or stole the lease first.
    """
    def __init__(self, item, message: str = None):
        self.item = item
        super().__init__(message or f"Lease lost for item {item.id}")


class RescheduleNotImplemented(SchedulerError, NotImplementedError):
    pass


class SetupFailed(SchedulerError):
    pass
