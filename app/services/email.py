"""Notification email delivery via SMTP or SES."""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def render_notification(title: str, message: str, link: str = "") -> tuple[str, str]:
    """Return (html, text) bodies for a pipeline notification."""
    text = f"{message}\n\n{settings.app_name}"
    html = f"<h3>{title}</h3><p>{message}</p>"
    if link:
        text = f"{message}\n\nOpen: {link}\n\n{settings.app_name}"
        html += f'<p><a href="{link}">Open in pipeline</a></p>'
    return html, text


async def send_via_smtp(to_email: str, subject: str, html_body: str, text_body: str) -> bool:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    try:
        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
        logger.info(f"Notification email sent to {to_email}")
        return True
    except Exception as e:
        logger.error(f"SMTP notification to {to_email} failed: {e}")
        return False


async def send_via_ses(to_email: str, subject: str, html_body: str, text_body: str) -> bool:
    import boto3

    try:
        client = boto3.client(
            "ses",
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        client.send_email(
            Source=f"{settings.smtp_from_name} <{settings.smtp_from_email}>",
            Destination={"ToAddresses": [to_email]},
            Message={
                "Subject": {"Charset": "UTF-8", "Data": subject},
                "Body": {
                    "Html": {"Charset": "UTF-8", "Data": html_body},
                    "Text": {"Charset": "UTF-8", "Data": text_body},
                },
            },
        )
        logger.info(f"SES notification sent to {to_email}")
        return True
    except Exception as e:
        logger.error(f"SES notification to {to_email} failed: {e}")
        return False


async def send_notification_email(to_email: str, title: str, message: str, link: str = "") -> bool:
    """Route to the configured mail backend."""
    html, text = render_notification(title, message, link)
    if settings.mail_backend == "ses":
        return await send_via_ses(to_email, title, html, text)
    return await send_via_smtp(to_email, title, html, text)
