from typing import Optional


class CrawlctlError(Exception):
    """Base class for queue and command errors."""


class StorageUnavailable(CrawlctlError):
    """The durable store could not be opened or initialized."""


class SerializationFailure(CrawlctlError):
    """A command could not be encoded, or a stored payload could not be decoded."""

    def __init__(self, message: str, record_id: Optional[int] = None):
        super().__init__(message)
        self.record_id = record_id


class FetchFailure(CrawlctlError):
    """Transport-level failure while fetching a command's target."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"{target}: {reason}")
        self.target = target
        self.reason = reason


class EmptyQueue(CrawlctlError):
    """fetch_next() was called while no record is pending."""


class UnknownIdentity(CrawlctlError):
    def __init__(self, record_id: Optional[int]):
        super().__init__(f"No command record with id {record_id!r}")
        self.record_id = record_id
