import logging
import smtplib
import uuid
from email.message import EmailMessage
from pathlib import Path

import anyio
from jinja2 import Environment, FileSystemLoader, select_autoescape

from optout.core.config import settings
from optout.core.errors import NotificationDeliveryError
from optout.core.logging_config import mask_email

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent.parent / "templates" / "emails"
env = Environment(loader=FileSystemLoader(TEMPLATE_PATH), autoescape=select_autoescape(["html", "xml"]))


def _build_message(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
    *,
    company_id: uuid.UUID | None = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email or "no-reply@optout.local"
    msg["To"] = to_email
    if company_id is not None:
        msg["X-Company-ID"] = str(company_id)
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


def _deliver(msg: EmailMessage) -> None:
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls()
        if settings.smtp_username and settings.smtp_password:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(msg)


async def send_email(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
    *,
    company_id: uuid.UUID | None = None,
) -> bool:
    """Send a transactional email.

    Returns True once the SMTP server accepted the message and False when SMTP
    is disabled and the message was only logged. Callers treat a skipped send
    as delivered. Transport failures raise ``NotificationDeliveryError``.
    """
    msg = _build_message(to_email, subject, text_body, html_body, company_id=company_id)
    if not settings.smtp_enabled:
        logger.info("email_skipped_smtp_disabled", extra={"to": mask_email(to_email), "subject": subject})
        return False
    try:
        await anyio.to_thread.run_sync(_deliver, msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email send failed: %s", exc, extra={"to": mask_email(to_email)})
        raise NotificationDeliveryError() from exc
    return True


def render_template(template_name: str, context: dict) -> tuple[str, str]:
    base_text = env.get_template("base.txt.j2")
    base_html = env.get_template("base.html.j2")
    body_text = env.get_template(template_name).render(**context)
    body_html = env.get_template(template_name.replace(".txt.j2", ".html.j2")).render(**context)
    return base_text.render(body=body_text), base_html.render(body=body_html)


async def send_unsubscribe_confirmation(
    to_email: str,
    *,
    resubscribe_url: str,
    company_id: uuid.UUID | None = None,
) -> bool:
    subject = "You have been unsubscribed"
    text_body, html_body = render_template(
        "newsletter_unsubscribed.txt.j2", {"email": to_email, "resubscribe_url": resubscribe_url}
    )
    return await send_email(to_email, subject, text_body, html_body, company_id=company_id)


async def send_resubscribe_welcome(to_email: str, *, company_id: uuid.UUID | None = None) -> bool:
    subject = "Welcome back to our newsletter"
    text_body, html_body = render_template("newsletter_resubscribed.txt.j2", {"email": to_email})
    return await send_email(to_email, subject, text_body, html_body, company_id=company_id)
