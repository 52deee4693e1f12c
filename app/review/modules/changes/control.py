from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from app.review.errors import ForbiddenError, NotFoundError
from app.review.models import User
from app.review.modules.changes.models import Change
from app.review.modules.changes.status import ChangeStatus
from app.review.rbac import user_has_permission

logger = logging.getLogger(__name__)


def may_abandon(user: User, owner_user_id: int) -> bool:
    return user.id == owner_user_id or user_has_permission(user, "changes.abandon")


@dataclass(frozen=True)
class ChangeControl:
    """What one user may do with one change, as read at authorization time."""

    user: User
    change_id: int
    subject: str
    owner_user_id: int
    status: ChangeStatus
    current_revision_id: int | None
    current_sequence: int | None
    revision_ids: dict[int, int]  # sequence -> revision id

    def is_owner(self) -> bool:
        return self.user.id == self.owner_user_id

    def is_visible(self) -> bool:
        return self.is_owner() or user_has_permission(self.user, "changes.view")

    def can_abandon(self) -> bool:
        return may_abandon(self.user, self.owner_user_id)

    def revision_id(self, sequence: int) -> int:
        rid = self.revision_ids.get(sequence)
        if rid is None:
            raise NotFoundError(f"Revision {sequence} of change {self.change_id} not found")
        return rid


class ChangeControlFactory:
    def __init__(self, sm: sessionmaker) -> None:
        self._sm = sm

    def validate_for(self, user: User | None, change_id: int) -> ChangeControl:
        """
        Resolve the caller's view of a change.
        Invisible changes are reported exactly like missing ones.
        """
        if user is None or not user.is_active:
            raise NotFoundError(f"Change {change_id} not found")
        with self._sm() as s:
            change = s.get(Change, change_id)
            if change is None:
                raise NotFoundError(f"Change {change_id} not found")
            current = change.current_revision
            control = ChangeControl(
                user=user,
                change_id=change.id,
                subject=change.subject,
                owner_user_id=change.owner_user_id,
                status=change.status,
                current_revision_id=change.current_revision_id,
                current_sequence=current.sequence if current else None,
                revision_ids={r.sequence: r.id for r in change.revisions},
            )
        if not control.is_visible():
            raise NotFoundError(f"Change {change_id} not found")
        return control


def authorize_abandon(control: ChangeControl) -> ChangeControl:
    if not control.can_abandon():
        logger.warning("Abandon denied: user=%s change=%s", control.user.id, control.change_id)
        raise ForbiddenError(f"Not permitted to abandon change {control.change_id}")
    return control
