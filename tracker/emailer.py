# tracker/emailer.py
"""
Optional SMTP channel for match digests. Only used when EMAIL_TO names at
least one recipient and EMAIL_FROM/SMTP_HOST are set.
"""
import os
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from .logger import get_logger

logger = get_logger(__name__)

PLAIN_FALLBACK = "Open this digest in an HTML capable mail client to see the listings."


@dataclass(frozen=True)
class SmtpSettings:
    sender: str
    host: str
    port: int = 587
    user: str = ""
    password: str = ""
    use_ssl: bool = False
    timeout: float = 30.0

    @property
    def usable(self) -> bool:
        return bool(self.sender and self.host)


def settings_from_env() -> SmtpSettings:
    return SmtpSettings(
        sender=os.getenv("EMAIL_FROM", "").strip(),
        host=os.getenv("SMTP_HOST", "").strip(),
        port=int(os.getenv("SMTP_PORT", "587")),
        user=os.getenv("SMTP_USER", "").strip(),
        password=os.getenv("SMTP_PASS", "").strip(),
        use_ssl=os.getenv("SMTP_USE_SSL", "false").lower() == "true",
        timeout=float(os.getenv("SMTP_TIMEOUT", "30")),
    )


SETTINGS = settings_from_env()

# Digest recipients (comma or semicolon separated); empty disables e-mail
_EMAIL_TO_RAW = os.getenv("EMAIL_TO", "").strip()


def get_recipients(raw: Optional[str] = None) -> List[str]:
    raw = _EMAIL_TO_RAW if raw is None else raw
    if not raw:
        return []
    parts = [p.strip() for p in raw.replace(";", ",").split(",")]
    return [p for p in parts if p]


def is_configured(settings: Optional[SmtpSettings] = None) -> bool:
    return (settings or SETTINGS).usable


def build_message(
    sender: str,
    subject: str,
    html_body: str,
    text_body: Optional[str],
    recipients: List[str],
) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    # clients prefer the last alternative, so html goes after plain text
    msg.attach(MIMEText(text_body or PLAIN_FALLBACK, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


def _open(settings: SmtpSettings) -> smtplib.SMTP:
    if settings.use_ssl:
        return smtplib.SMTP_SSL(settings.host, settings.port, timeout=settings.timeout)
    return smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)


def send_email(
    subject: str,
    html_body: str,
    text_body: Optional[str],
    recipients: List[str],
    settings: Optional[SmtpSettings] = None,
) -> bool:
    """
    Send a match digest. Returns False when sending was skipped;
    SMTP errors propagate to the caller.
    """
    settings = settings or SETTINGS
    if not recipients:
        logger.warning("No recipients for digest '%s'; skipping send.", subject)
        return False
    if not is_configured(settings):
        logger.warning("EMAIL_FROM/SMTP_HOST not set; skipping digest: %s", subject)
        return False

    msg = build_message(settings.sender, subject, html_body, text_body, recipients)
    server = _open(settings)
    try:
        if not settings.use_ssl:
            server.starttls()
        if settings.user:
            server.login(settings.user, settings.password)
        server.sendmail(settings.sender, recipients, msg.as_string())
        logger.info("Digest sent to %s: %s", recipients, subject)
    finally:
        try:
            server.quit()
        except smtplib.SMTPException:
            pass
    return True
