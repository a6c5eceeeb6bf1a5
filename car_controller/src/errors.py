from __future__ import annotations


class StoreError(RuntimeError):
    """Base class for failures reported by the object store.

    ``status`` carries the HTTP status of the underlying API response when
    one exists, so callers can log it without unwrapping the cause.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(StoreError):
    """The requested object does not exist (any more)."""


class AlreadyExists(StoreError):
    """A create raced with another writer that created the same object first."""


class Conflict(StoreError):
    """An update carried a stale ``resourceVersion``.

    Never resolved by overwriting: the object must be re-fetched and the
    target recomputed, which the driver does by requeueing the key.
    """


class TransientStoreError(StoreError):
    """Network, availability or unexpected API failure worth retrying."""


class OwnerReferenceError(ValueError):
    """An owner reference cannot be placed on the owned object."""


class AlreadyOwnedError(OwnerReferenceError):
    """The owned object is already controlled by a different owner."""


class DeadlineExceeded(TimeoutError):
    """A reconcile ran past its deadline or was cancelled by shutdown."""
