import smtplib
from email.message import EmailMessage
from html import escape
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import Session

from app import store
from app.domain import EmailStatus
from app.models import Consultation, EmailLog

logger = structlog.get_logger(__name__)

CONSULTATION_READY_SUBJECT = "Your Feng Shui Consultation is Ready - CrystalEnergy.com"

TEXT_TEMPLATE = """Your Feng Shui Consultation - CrystalEnergy.com

Dear {name},

Thank you for choosing CrystalEnergy.com for your feng shui consultation. Your personalized reading has been carefully prepared.

YOUR PERSONAL FENG SHUI READING:
{result}

HOW TO USE THIS READING:
- Read through your consultation 2-3 times to fully absorb the guidance
- Implement the suggested changes gradually over 2-4 weeks
- Keep this email for future reference as you make adjustments

Browse our crystal collection at: {frontend_url}#products

With gratitude,
The CrystalEnergy.com Team
"""

HTML_TEMPLATE = """<!DOCTYPE html>
<html><body style="font-family: Georgia, serif; line-height: 1.6; color: #333;">
<h1>Your Personal Feng Shui Consultation</h1>
<p>Dear {name},</p>
<p>Thank you for choosing CrystalEnergy.com for your feng shui consultation.</p>
<pre style="white-space: pre-wrap; font-family: Georgia, serif;">{result}</pre>
<p><a href="{frontend_url}#products">Browse our crystal collection</a></p>
<p>With gratitude,<br>The CrystalEnergy.com Team</p>
</body></html>"""


class EmailService:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        sender: str,
        frontend_url: str,
        timeout: float = 15.0,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.frontend_url = frontend_url
        self.timeout = timeout
        self.smtp_factory = smtp_factory

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    def compose_consultation_ready(self, recipient: str, name: str, result: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = CONSULTATION_READY_SUBJECT
        message["From"] = self.sender
        message["To"] = recipient
        message.set_content(
            TEXT_TEMPLATE.format(name=name, result=result, frontend_url=self.frontend_url)
        )
        message.add_alternative(
            HTML_TEMPLATE.format(
                name=escape(name), result=escape(result), frontend_url=self.frontend_url
            ),
            subtype="html",
        )
        return message

    def _deliver(self, message: EmailMessage) -> None:
        if not self.configured:
            raise RuntimeError("SMTP credentials are not configured")
        with self.smtp_factory(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            smtp.login(self.username, self.password)
            smtp.send_message(message)

    def send_consultation_ready(
        self, db: Session, consultation: Consultation, recipient: str, name: str
    ) -> EmailLog:
        """
        Email a finished consultation. The attempt is always recorded; a failed
        send is logged and reported through the returned row, never raised.
        """
        message = self.compose_consultation_ready(recipient, name, consultation.ai_result or "")
        error = None
        try:
            self._deliver(message)
        except (smtplib.SMTPException, OSError, RuntimeError) as exc:
            error = str(exc)
            logger.warning(
                "consultation_email_failed",
                consultation_id=consultation.id,
                recipient=recipient,
                error=error,
            )

        status = EmailStatus.FAILED if error else EmailStatus.SENT
        entry = store.append_email_log(
            db,
            recipient=recipient,
            subject=CONSULTATION_READY_SUBJECT,
            status=status.value,
            consultation_id=consultation.id,
            error=error,
        )
        if status is EmailStatus.SENT:
            store.mark_consultation_emailed(db, consultation.id)
            logger.info("consultation_email_sent", consultation_id=consultation.id, recipient=recipient)
        store.commit(db)
        return entry
