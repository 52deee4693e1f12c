"""
Abandon command.

Authorize, write the transition in one transaction, mail interested parties
once the write is committed, then return the latest view of the change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Flask
from sqlalchemy.orm import sessionmaker

from app.review.errors import NotificationError
from app.review.models import User
from app.review.modules.changes.control import ChangeControlFactory, authorize_abandon
from app.review.modules.changes.detail import ChangeDetail, ChangeDetailFactory
from app.review.modules.changes.notify import AbandonedSenderFactory
from app.review.modules.changes.service import MessageDraft, abandon_message_text, commit_abandon

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AbandonResult:
    detail: ChangeDetail
    applied: bool


class AbandonChange:
    def __init__(
        self,
        *,
        control_factory: ChangeControlFactory,
        sm: sessionmaker,
        sender_factory: AbandonedSenderFactory,
        detail_factory: ChangeDetailFactory,
        current_user: User,
    ) -> None:
        self.control_factory = control_factory
        self._sm = sm
        self.sender_factory = sender_factory
        self.detail_factory = detail_factory
        self.current_user = current_user

    def call(self, change_id: int, sequence: int, message: str | None = None) -> AbandonResult:
        control = authorize_abandon(self.control_factory.validate_for(self.current_user, change_id))
        revision_id = control.revision_id(sequence)

        draft = MessageDraft(
            author_user_id=self.current_user.id,
            text=abandon_message_text(control.current_sequence or sequence, message),
        )

        applied = commit_abandon(self._sm, change_id, revision_id, draft)

        if applied:
            try:
                self.sender_factory.create(change_id, self.current_user, draft).send()
            except NotificationError as e:
                logger.warning("Change %s abandoned but reviewers were not notified: %s", change_id, e)
                # Committed but not notified: hand the caller the current view with the error.
                e.detail = self.detail_factory.create(change_id, self.current_user)
                raise

        return AbandonResult(detail=self.detail_factory.create(change_id, self.current_user), applied=applied)


def abandon_change_factory(app: Flask, current_user: User) -> AbandonChange:
    sm = app.extensions["sqlalchemy_sessionmaker"]
    return AbandonChange(
        control_factory=ChangeControlFactory(sm),
        sm=sm,
        sender_factory=AbandonedSenderFactory(
            app.extensions["mail_transport"],
            sm,
            mail_from=app.config["MAIL_FROM"],
            web_url=app.config["CANONICAL_WEB_URL"],
        ),
        detail_factory=ChangeDetailFactory(sm),
        current_user=current_user,
    )
