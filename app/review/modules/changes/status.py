from __future__ import annotations

from enum import Enum


class ChangeStatus(str, Enum):
    NEW = "new"
    SUBMITTED = "submitted"
    MERGED = "merged"
    ABANDONED = "abandoned"

    def is_open(self) -> bool:
        return self in _OPEN

    def is_closed(self) -> bool:
        return not self.is_open()


_OPEN = frozenset({ChangeStatus.NEW, ChangeStatus.SUBMITTED})
