"""
Send waitlist emails via SMTP (Google Gmail or other).
Set SMTP_USER, SMTP_PASSWORD (and optionally NOTIFY_FROM) in .env. Use a Gmail App Password (not your normal password).
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.config import settings

logger = logging.getLogger(__name__)


def _from_address() -> str:
    if (settings.notify_from or "").strip():
        return settings.notify_from.strip()
    user = (settings.smtp_user or "").strip()
    if user:
        return f"Waitlist <{user}>"
    return "Waitlist <noreply@localhost>"


def is_email_configured() -> bool:
    return bool((settings.smtp_user or "").strip() and (settings.smtp_password or "").strip())


def send_email(to_email: str, subject: str, body: str) -> bool:
    """
    Send one plain-text (+ minimal HTML) email via SMTP.
    Returns True if sent, False if skipped or failed.
    """
    to_email = (to_email or "").strip()
    if not to_email:
        return False
    if not is_email_configured():
        logger.debug("SMTP_USER or SMTP_PASSWORD not set; skipping email")
        return False
    user = settings.smtp_user.strip()
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = _from_address()
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(f"<pre style='font-family:sans-serif'>{body}</pre>", "html"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(user, settings.smtp_password.strip())
            server.sendmail(user, [to_email], msg.as_string())
        logger.info("Waitlist email sent to %s", to_email)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Failed to send waitlist email to %s: %s", to_email, e, exc_info=True)
        return False
