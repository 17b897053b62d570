import logging
import smtplib
from email.message import EmailMessage

from celery import Celery

from crmcore.core.config import get_settings

settings = get_settings()
logger = logging.getLogger("app.mail")

celery_app = Celery("crmcore_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="crmcore.tasks.send_email", ignore_result=True)
def send_email_task(to: str, subject: str, body: str) -> None:
    current = get_settings()
    if not current.smtp_host:
        logger.info("mail.skipped", extra={"status": "no_smtp_host"})
        return

    message = EmailMessage()
    message["From"] = current.mail_from
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    with smtplib.SMTP(current.smtp_host, current.smtp_port, timeout=10) as smtp:
        smtp.send_message(message)
    logger.info("mail.sent", extra={"status": "sent"})


def enqueue_email(to: str, subject: str, body: str) -> None:
    """Fire-and-forget mail delivery; broker problems are logged and never raised."""
    if not get_settings().mail_enabled:
        return
    try:
        send_email_task.delay(to, subject, body)
    except Exception as exc:
        logger.warning("mail.enqueue_failed", extra={"error": str(exc)})
