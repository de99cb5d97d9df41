"""Exception classes for memkeep."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import BatchOperationResult


class MemkeepError(Exception):
    """Base class for all memkeep errors."""


class NotFoundError(MemkeepError, KeyError):
    """A memory, version, context, tag or session does not exist."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.message


class AlreadyExistsError(MemkeepError):
    """Duplicate create of a context, tag or share."""


class ValidationError(MemkeepError, ValueError):
    """Malformed filter or request."""


class StorageError(MemkeepError, RuntimeError):
    """Persistence failed. The triggering mutation was not applied."""


class BatchCommitError(StorageError):
    """The single commit at the end of a batch failed.

    Attributes:
        result: The batch tally, flipped to ``successful=0, failed=total``
    """

    def __init__(self, message: str, result: "BatchOperationResult"):
        super().__init__(message)
        self.result = result


class PersistenceWarning(UserWarning):
    """Bookkeeping could not be saved after the primary write was committed."""
