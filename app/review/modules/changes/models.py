from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, SmallInteger, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.review.models import Base
from app.review.modules.changes.status import ChangeStatus


def _status_column() -> Enum:
    return Enum(
        ChangeStatus,
        native_enum=False,
        length=16,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class Change(Base):
    __tablename__ = "changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    project: Mapped[str] = mapped_column(String(255), nullable=False)
    dest_branch: Mapped[str] = mapped_column(String(255), nullable=False, default="refs/heads/main")

    owner_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    # new/submitted (open) -> merged/abandoned (closed)
    status: Mapped[ChangeStatus] = mapped_column(_status_column(), nullable=False, default=ChangeStatus.NEW)

    current_revision_id: Mapped[int | None] = mapped_column(
        ForeignKey("revisions.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_updated_on: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Optimistic lock: every UPDATE is issued as WHERE row_version = <value read>.
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": row_version}

    revisions: Mapped[list["Revision"]] = relationship(
        "Revision",
        back_populates="change",
        cascade="all, delete-orphan",
        lazy="selectin",
        foreign_keys="Revision.change_id",
        order_by="Revision.sequence",
    )

    current_revision: Mapped["Revision | None"] = relationship(
        "Revision",
        foreign_keys=[current_revision_id],
        lazy="selectin",
        post_update=True,
    )

    approvals: Mapped[list["Approval"]] = relationship(
        "Approval",
        back_populates="change",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Approval.id",
    )

    messages: Mapped[list["ChangeMessage"]] = relationship(
        "ChangeMessage",
        back_populates="change",
        lazy="selectin",
        order_by="ChangeMessage.id",
    )


class Revision(Base):
    """Immutable snapshot of a change; (change_id, sequence) identifies it."""

    __tablename__ = "revisions"
    __table_args__ = (
        UniqueConstraint("change_id", "sequence", name="uq_revision_change_sequence"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    change_id: Mapped[int] = mapped_column(ForeignKey("changes.id", ondelete="CASCADE"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    commit_sha: Mapped[str | None] = mapped_column(String(40), nullable=True)
    uploader_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    change: Mapped[Change] = relationship(
        "Change",
        back_populates="revisions",
        foreign_keys=[change_id],
        lazy="selectin",
    )


class Approval(Base):
    """
    A reviewer's score on one revision.

    `change_status` denormalizes the parent change's status for list queries.
    Only service.refresh_approval_cache writes it.
    """

    __tablename__ = "approvals"
    __table_args__ = (
        UniqueConstraint("revision_id", "reviewer_user_id", name="uq_approval_revision_reviewer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    change_id: Mapped[int] = mapped_column(ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True)
    revision_id: Mapped[int] = mapped_column(ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False)
    reviewer_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    category: Mapped[str] = mapped_column(String(64), nullable=False, default="Code-Review")
    value: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    change_status: Mapped[ChangeStatus] = mapped_column(_status_column(), nullable=False, default=ChangeStatus.NEW)

    change: Mapped[Change] = relationship("Change", back_populates="approvals", lazy="selectin")
    revision: Mapped[Revision] = relationship("Revision", lazy="selectin")


class ChangeMessage(Base):
    """
    Append-only audit trail entry for a change.
    Rows are inserted once and never updated or deleted.
    """

    __tablename__ = "change_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    change_id: Mapped[int] = mapped_column(ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True)
    revision_id: Mapped[int | None] = mapped_column(ForeignKey("revisions.id", ondelete="SET NULL"), nullable=True)
    author_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    message: Mapped[str] = mapped_column(Text, nullable=False)
    written_on: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    change: Mapped[Change] = relationship("Change", back_populates="messages", lazy="selectin")
