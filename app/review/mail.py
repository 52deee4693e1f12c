from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

from app.review.errors import NotificationError

logger = logging.getLogger(__name__)


class MailTransport:
    def send(self, msg: EmailMessage) -> None:
        raise NotImplementedError


class LogTransport(MailTransport):
    """Development backend: writes outgoing mail to the log instead of sending it."""

    def send(self, msg: EmailMessage) -> None:
        logger.info("MAIL to=%s subject=%r\n%s", msg["To"], msg["Subject"], msg.get_content())


@dataclass(frozen=True)
class SmtpTransport(MailTransport):
    host: str
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    timeout_seconds: int = 30

    def send(self, msg: EmailMessage) -> None:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery via {self.host}:{self.port} failed: {e}") from e


def mail_transport_from_config(config: dict) -> MailTransport:
    backend = (config.get("MAIL_BACKEND") or "log").strip().lower()
    if backend == "smtp":
        return SmtpTransport(
            host=(config.get("SMTP_HOST") or "").strip(),
            port=int(config.get("SMTP_PORT") or 587),
            username=(config.get("SMTP_USERNAME") or "").strip(),
            password=config.get("SMTP_PASSWORD") or "",
            use_tls=bool(config.get("SMTP_USE_TLS", True)),
        )
    # default: log only
    return LogTransport()
