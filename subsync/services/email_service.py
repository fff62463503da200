import logging
from urllib.parse import quote

from flask_mail import Message

from subsync.errors import UpstreamUnavailable
from subsync.extensions import mail
from subsync.notifications.email_templates import EmailTemplates

logger = logging.getLogger(__name__)


class MailSender:
    """Sends mail through Flask-Mail and returns the Message-ID."""

    def __init__(self, mailer=mail, default_sender=None):
        self._mailer = mailer
        self._default_sender = default_sender

    def send(self, to, subject, html_body, text_body, sender=None) -> str:
        msg = Message(
            subject=subject,
            recipients=[to],
            html=html_body,
            body=text_body,
            sender=sender or self._default_sender,
        )
        try:
            self._mailer.send(msg)
        except Exception as e:
            logger.error(f"Failed to send email to {to}: {e}", exc_info=True)
            raise UpstreamUnavailable("Failed to send email", details={"error": str(e)})

        logger.info(f"Email sent to {to}: {subject}", extra={"message_id": msg.msgId})
        return msg.msgId


class VerificationMailer:
    """Builds and sends the parental consent email."""

    def __init__(self, sender: MailSender, base_url: str, support_email: str, ttl_hours: int = 24):
        self._sender = sender
        self._base_url = base_url.rstrip("/")
        self._support_email = support_email
        self._ttl_hours = ttl_hours

    def verification_url(self, token: str) -> str:
        return f"{self._base_url}/verify?token={quote(token, safe='')}"

    def send_verification(self, parent_email: str, child_name: str, token: str) -> str:
        subject, html, text = EmailTemplates.parental_consent(
            child_name,
            self.verification_url(token),
            self._support_email,
            ttl_hours=self._ttl_hours,
        )
        return self._sender.send(parent_email, subject, html, text)
