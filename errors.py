"""Exception hierarchy shared by the store, the catalog and the loan ledger.

Every caller-facing failure derives from :class:`LibraryError` and carries a
message that can be shown to the user as-is. ``StorageFailure`` is the only
infrastructure fault; the HTTP layer maps it to a generic server error.
"""


class LibraryError(Exception):
    """Base class for all inventory errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(LibraryError):
    """Missing or malformed input (empty title, negative copies, ...)."""


class NotFound(LibraryError):
    """A referenced book or loan does not exist."""


class Conflict(LibraryError):
    """The operation would break an inventory rule."""


class StorageFailure(LibraryError):
    """Reading or writing the durable snapshot failed."""
