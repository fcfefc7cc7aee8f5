"""Custom exceptions for the realtime document store."""


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached for a read or write."""
    pass


class DocumentNotFound(Exception):
    """Raised when updating a document that does not exist."""
    pass


class SubscriptionError(Exception):
    """Delivered to a subscriber when its realtime query fails (e.g. permission denied)."""

    def __init__(self, message: str, target: str = ""):
        super().__init__(message)
        self.target = target
