from __future__ import annotations


class QueueError(RuntimeError):
    pass


class SerializationError(QueueError):
    """Item cannot be encoded to (or decoded from) JSON."""


class StoreUnavailableError(QueueError):
    """Configured store is not registered or has an unsupported type."""


class StoreOperationError(QueueError):
    """A single round trip against the durable store failed."""


class PersistenceError(QueueError):
    pass


class PersistenceReadError(PersistenceError):
    pass


class PersistenceWriteError(PersistenceError):
    pass


class PersistenceParseError(PersistenceError):
    pass
