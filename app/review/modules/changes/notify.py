from __future__ import annotations

import logging
from email.message import EmailMessage
from email.utils import formataddr

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.review.errors import NotificationError
from app.review.mail import MailTransport
from app.review.models import User
from app.review.modules.changes.models import Change
from app.review.modules.changes.service import MessageDraft

logger = logging.getLogger(__name__)


class AbandonedSender:
    """
    Mails the owner and reviewers of a change that was just abandoned.

    Sent once, after commit. Any failure is raised as NotificationError and
    nothing is retried.
    """

    def __init__(
        self,
        *,
        transport: MailTransport,
        sm: sessionmaker,
        mail_from: str,
        web_url: str,
        change_id: int,
        from_user: User,
        draft: MessageDraft,
    ) -> None:
        self.transport = transport
        self._sm = sm
        self.mail_from = mail_from
        self.web_url = web_url
        self.change_id = change_id
        self.from_user = from_user
        self.draft = draft

    def _load(self) -> tuple[Change, list[User]]:
        with self._sm() as s:
            change = s.get(Change, self.change_id)
            if change is None:
                raise NotificationError(f"Change {self.change_id} vanished before notification")
            ids = {change.owner_user_id} | {a.reviewer_user_id for a in change.approvals}
            ids.discard(self.from_user.id)
            users = list(
                s.scalars(
                    select(User).where(User.id.in_(ids), User.is_active.is_(True)).order_by(User.email.asc())
                ).all()
            ) if ids else []
        return change, users

    def build_message(self, change: Change, recipients: list[User]) -> EmailMessage:
        url = self.web_url.rstrip("/") + f"/c/{change.id}"
        msg = EmailMessage()
        msg["From"] = formataddr((self.from_user.display_name, self.mail_from))
        msg["Reply-To"] = self.from_user.email
        msg["To"] = ", ".join(u.email for u in recipients)
        msg["Subject"] = f"Change {change.id}: {change.subject} (abandoned)"
        msg["X-Review-Change-Id"] = str(change.id)
        msg["X-Review-MessageType"] = "abandon"
        msg.set_content(
            f"{self.from_user.display_name} has abandoned this change.\n"
            "\n"
            f"Change subject: {change.subject}\n"
            f"Project: {change.project} ({change.dest_branch})\n"
            "......................................................\n"
            "\n"
            f"{self.draft.text}\n"
            "\n"
            "--\n"
            f"To view, visit {url}\n"
        )
        return msg

    def send(self) -> bool:
        """Returns False when there is nobody to notify."""
        try:
            change, recipients = self._load()
            if not recipients:
                logger.info("No recipients for abandon notice on change %s", self.change_id)
                return False
            self.transport.send(self.build_message(change, recipients))
        except NotificationError:
            logger.exception("Abandon notice for change %s failed", self.change_id)
            raise
        except Exception as e:
            logger.exception("Abandon notice for change %s failed", self.change_id)
            raise NotificationError(f"Abandon notice for change {self.change_id} failed: {e}") from e
        logger.info("Abandon notice for change %s sent to %d recipient(s)", self.change_id, len(recipients))
        return True


class AbandonedSenderFactory:
    def __init__(self, transport: MailTransport, sm: sessionmaker, *, mail_from: str, web_url: str) -> None:
        self.transport = transport
        self._sm = sm
        self.mail_from = mail_from
        self.web_url = web_url

    def create(self, change_id: int, from_user: User, draft: MessageDraft) -> AbandonedSender:
        return AbandonedSender(
            transport=self.transport,
            sm=self._sm,
            mail_from=self.mail_from,
            web_url=self.web_url,
            change_id=change_id,
            from_user=from_user,
            draft=draft,
        )
