from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import sessionmaker

from app.review.errors import NotFoundError
from app.review.models import User
from app.review.modules.changes.control import may_abandon
from app.review.modules.changes.models import Change


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


@dataclass(frozen=True)
class ChangeDetail:
    id: int
    subject: str
    project: str
    dest_branch: str
    owner_user_id: int
    status: str
    current_revision: int | None
    last_updated_on: str | None
    can_abandon: bool
    revisions: list[dict[str, Any]] = field(default_factory=list)
    approvals: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ChangeDetailFactory:
    """Read model for a change. Always reads the latest committed state."""

    def __init__(self, sm: sessionmaker) -> None:
        self._sm = sm

    def create(self, change_id: int, user: User) -> ChangeDetail:
        with self._sm() as s:
            c = s.get(Change, change_id)
            if c is None:
                raise NotFoundError(f"Change {change_id} not found")
            seq_by_id = {r.id: r.sequence for r in c.revisions}
            return ChangeDetail(
                id=c.id,
                subject=c.subject,
                project=c.project,
                dest_branch=c.dest_branch,
                owner_user_id=c.owner_user_id,
                status=c.status.value,
                current_revision=seq_by_id.get(c.current_revision_id) if c.current_revision_id else None,
                last_updated_on=_iso(c.last_updated_on),
                can_abandon=c.status.is_open() and may_abandon(user, c.owner_user_id),
                revisions=[
                    {
                        "sequence": r.sequence,
                        "commit_sha": r.commit_sha,
                        "uploader_user_id": r.uploader_user_id,
                        "created_at": _iso(r.created_at),
                    }
                    for r in c.revisions
                ],
                approvals=[
                    {
                        "revision": seq_by_id.get(a.revision_id),
                        "reviewer_user_id": a.reviewer_user_id,
                        "category": a.category,
                        "value": a.value,
                        "change_status": a.change_status.value,
                    }
                    for a in c.approvals
                ],
                messages=[
                    {
                        "uuid": m.uuid,
                        "revision": seq_by_id.get(m.revision_id) if m.revision_id else None,
                        "author_user_id": m.author_user_id,
                        "message": m.message,
                        "written_on": _iso(m.written_on),
                    }
                    for m in c.messages
                ],
            )
