"""
Message delivery.

- Email goes out over SMTP (the Brevo relay by default). The campaign id is
  sent as an X-Mailin-Tag header so provider statistics can be filtered
  per campaign, and the generated Message-ID is the delivery id.
- WhatsApp is never sent server-side: we build a pre-filled wa.me link for
  a human to open.
"""

import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional
from urllib.parse import quote

from leadforge import config
from leadforge.dedup import normalize_phone

logger = logging.getLogger(__name__)


class SendResult:
    """Result of a message send attempt."""
    def __init__(
        self,
        success: bool,
        delivery_id: Optional[str] = None,
        error: Optional[str] = None,
        bounced: bool = False,
        message: str = "",
    ):
        self.success = success
        self.delivery_id = delivery_id
        self.error = error
        self.bounced = bounced
        self.message = message

    def __repr__(self) -> str:
        return f"SendResult(success={self.success}, delivery_id={self.delivery_id!r}, error={self.error!r})"


def send_email(
    to_email: str,
    subject: str,
    text: str,
    sender_name: str,
    tags: Optional[list[str]] = None,
    dry_run: bool = False,
) -> SendResult:
    """
    Send a single plain-text email.

    Args:
        to_email: Recipient
        subject: Email subject
        text: Plain text body (footer already appended)
        sender_name: Display name for the From header
        tags: Provider tags, used to filter engagement stats
        dry_run: If True, don't actually send

    Returns:
        SendResult with success/failure info
    """
    tags = tags or []
    sender_email = config.SENDER_EMAIL or config.SMTP_USER
    domain = sender_email.split('@', 1)[1] if '@' in sender_email else None
    message_id = make_msgid(domain=domain)

    if dry_run or config.DRY_RUN:
        logger.info("[DRY RUN] Would send email to %s: %s", to_email, subject)
        return SendResult(success=True, delivery_id=message_id, message=f"[DRY RUN] Would send to {to_email}")

    if not config.SMTP_USER or not config.SMTP_PASSWORD:
        return SendResult(success=False, error="SMTP credentials not configured", message="config_error")

    msg = MIMEText(text, 'plain', 'utf-8')
    msg['From'] = formataddr((sender_name, sender_email)) if sender_name else sender_email
    msg['To'] = to_email
    msg['Subject'] = subject
    msg['Message-ID'] = message_id
    if tags:
        msg['X-Mailin-Tag'] = ', '.join(tags)
    msg['List-Unsubscribe'] = f"<{config.APP_URL.rstrip('/')}/unsubscribe?email={quote(to_email)}>"

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.REQUEST_TIMEOUT) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(config.SMTP_USER, config.SMTP_PASSWORD)
            server.sendmail(sender_email, [to_email], msg.as_string())

        logger.info("Email sent to %s (%s)", to_email, message_id)
        return SendResult(success=True, delivery_id=message_id, message=f"Sent to {to_email}")

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipient refused: %s", e)
        return SendResult(success=False, error=str(e), bounced=True, message="Recipient refused")
    except smtplib.SMTPException as e:
        logger.error("SMTP error: %s", e)
        return SendResult(success=False, error=str(e), message="SMTP error")
    except OSError as e:
        logger.error("Connection error sending email: %s", e)
        return SendResult(success=False, error=str(e), message="Connection error")


def build_chat_link(phone: str, text: str) -> str:
    """Pre-filled click-to-chat link for manual dispatch."""
    digits = normalize_phone(phone) or ""
    return f"https://wa.me/{digits}?text={quote(text)}"
