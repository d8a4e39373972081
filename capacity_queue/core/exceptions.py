class CapacityQueueError(Exception):
    """Base exception for the capacity queue engine."""

    pass


class QueueStoreError(CapacityQueueError):
    """Raised when a stored queue record is missing fields or cannot be decoded."""

    pass