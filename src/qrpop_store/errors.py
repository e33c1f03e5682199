"""Exception hierarchy for the persistence layer."""

from __future__ import annotations


class PersistenceError(Exception):
    """Base class for every error raised by the persistence layer."""

    message = "Persistence Error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(detail or self.message)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class InvalidIdentifier(PersistenceError):
    """A single-entity lookup was given a missing or malformed identifier."""

    message = "Invalid Entity ID"


class NotFound(PersistenceError):
    """No record matched a required single-entity lookup."""

    message = "No Entity Found"


class StoreFailure(PersistenceError):
    """The underlying database rejected a query, write or batch delete.

    The native ``sqlite3`` error, when there is one, is chained as
    ``__cause__``.
    """

    message = "Store Failure"


class PayloadDecodeError(PersistenceError):
    """A serialized design or builder payload could not be decoded."""

    message = "Malformed Payload"


class SharedContainerUnavailable(PersistenceError):
    """The shared storage location could not be resolved.

    Raised at startup only. Continuing would silently drop all writes, so
    callers are expected to let it terminate the process.
    """

    message = "Shared file container could not be created"


class ThumbnailError(PersistenceError):
    """A design could not be rendered to a thumbnail."""

    message = "Thumbnail Rendering Failed"


__all__ = [
    "PersistenceError",
    "InvalidIdentifier",
    "NotFound",
    "StoreFailure",
    "PayloadDecodeError",
    "SharedContainerUnavailable",
    "ThumbnailError",
]
