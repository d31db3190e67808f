# services/email_service.py
import logging
import smtplib
from email.mime.text import MIMEText

from jinja2 import Template

from config import SMTP_PASS, SMTP_PORT, SMTP_SERVER, SMTP_USER
from services.elasticsearch_client import get_es
from services.logging_service import log_audit

logger = logging.getLogger(__name__)


def smtp_configured():
    return bool(SMTP_USER and SMTP_PASS)


def send_notification(subject, body, recipients, cc=None, bcc=None, is_html=False, template_vars=None):
    """Render ``body`` with jinja2 when variables are given and send it over SMTP."""
    if template_vars:
        body = Template(body).render(**template_vars)
        subject = Template(subject).render(**template_vars)

    msg = MIMEText(body, "html" if is_html else "plain")
    msg["Subject"] = subject
    msg["From"] = SMTP_USER
    msg["To"] = ", ".join(recipients)
    if cc:
        msg["Cc"] = ", ".join(cc)
    all_recipients = list(recipients) + list(cc or []) + list(bcc or [])

    es = get_es()
    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT) as server:
            server.starttls()
            server.login(SMTP_USER, SMTP_PASS)
            server.sendmail(SMTP_USER, all_recipients, msg.as_string())
        logger.info(f"[Email] Notification sent to: {all_recipients}")
        log_audit(es, "send_notification", "system", details={"subject": subject, "recipients": all_recipients})
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"[Email] Failed to send notification: {e}")
        log_audit(es, "send_notification_failed", "system",
                  details={"subject": subject, "recipients": all_recipients, "error": str(e)})
        return False
