"""Email adapter - SMTP send with draft mode for patient portal links."""

from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

import aiosmtplib
import structlog

from clinic_crm.config import settings

logger = structlog.get_logger()


async def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    from_email: str | None = None,
) -> bool:
    """Send an email via SMTP.

    Returns False without sending (draft mode) when no SMTP host is configured,
    and False when delivery fails. Delivery problems never propagate.
    """
    host = settings.smtp_host
    sender = from_email or settings.smtp_from or settings.smtp_user

    if not host or host == "localhost":
        logger.info("email_draft_mode_smtp_not_configured", subject=subject)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to_email
    msg.attach(MIMEText(body_html, "html"))

    try:
        await aiosmtplib.send(
            msg,
            hostname=host,
            port=settings.smtp_port,
            username=settings.smtp_user or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
        )
        logger.info("email_sent", subject=subject)
        return True
    except Exception as e:
        logger.error("email_send_failed", error=str(e), subject=subject)
        return False


def _link_body(intro: str, url: str, label: str) -> str:
    return (
        f"<p>{intro}</p>"
        f'<p><a href="{url}" target="_blank">{label}</a></p>'
        f"<p>This link expires in {settings.verification_ttl_minutes} minutes.</p>"
        "<p>If you didn't request this, ignore this email.</p>"
    )


async def send_verification_email(to_email: str, verify_url: str) -> bool:
    return await send_email(
        to_email,
        "Verify your email",
        _link_body("Please confirm your email address to continue your treatment plan:", verify_url, "Verify email"),
    )


async def send_magic_link_email(to_email: str, verify_url: str) -> bool:
    return await send_email(
        to_email,
        "Access your portal",
        _link_body("Click the button below to access your portal:", verify_url, "Access Portal"),
    )
