from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.review.db import run_in_transaction
from app.review.modules.changes.models import Change, ChangeMessage
from app.review.modules.changes.status import ChangeStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageDraft:
    """Change message built before the write; inserted only if the transition applies."""

    author_user_id: int
    text: str
    written_on: datetime = field(default_factory=datetime.utcnow)
    uuid: str = field(default_factory=lambda: uuid.uuid4().hex)


def is_abandonable(change: Change, revision_id: int) -> bool:
    # False means the change moved on (closed, or a newer revision) since the caller looked.
    return change.status.is_open() and change.current_revision_id == revision_id


def abandon_message_text(current_sequence: int, message: str | None) -> str:
    text = f"Revision {current_sequence}: Abandoned"
    if message:
        text += "\n\n" + message
    return text


def refresh_approval_cache(change: Change) -> None:
    """Recompute the denormalized change status on every approval of the change."""
    for a in change.approvals:
        a.change_status = change.status


def set_change_status(change: Change, status: ChangeStatus, now: datetime | None = None) -> None:
    change.status = status
    change.last_updated_on = now or datetime.utcnow()
    refresh_approval_cache(change)


def _abandon_in_session(s: Session, change_id: int, revision_id: int, draft: MessageDraft) -> bool:
    change = s.execute(
        select(Change)
        .where(Change.id == change_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if change is None or not is_abandonable(change, revision_id):
        return False

    set_change_status(change, ChangeStatus.ABANDONED, draft.written_on)
    s.add(
        ChangeMessage(
            uuid=draft.uuid,
            change_id=change.id,
            revision_id=revision_id,
            author_user_id=draft.author_user_id,
            message=draft.text,
            written_on=draft.written_on,
        )
    )
    s.flush()
    return True


def commit_abandon(sm: sessionmaker, change_id: int, revision_id: int, draft: MessageDraft) -> bool:
    """
    Abandon the change in one transaction.

    The guard is re-evaluated against the row as read inside the transaction
    (locked FOR UPDATE where the database supports it). Status, approval
    caches, the change message and the change row land together or not at
    all. Returns False when the change is no longer abandonable; that is a
    no-op, not an error.
    """
    applied = run_in_transaction(sm, lambda s: _abandon_in_session(s, change_id, revision_id, draft))
    if applied:
        logger.info("Change %s abandoned (revision_id=%s author=%s)", change_id, revision_id, draft.author_user_id)
    else:
        logger.warning("Abandon of change %s skipped: not open or revision %s is not current", change_id, revision_id)
    return applied
