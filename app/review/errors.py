from __future__ import annotations

from typing import Any


class ReviewError(RuntimeError):
    pass


class NotFoundError(ReviewError):
    """Change or revision does not exist, or is not visible to the caller."""


class ForbiddenError(ReviewError):
    pass


class PersistenceError(ReviewError):
    """Transaction failed and was rolled back. Wraps the underlying store error."""


class NotificationError(ReviewError):
    """
    Post-commit mail delivery failed.

    The state change has already been committed; `detail` carries the
    current view of the change when the command could build one.
    """

    def __init__(self, message: str, *, detail: Any | None = None) -> None:
        super().__init__(message)
        self.detail = detail
