"""Outbound email for notification jobs via SMTP or SES, with Jinja2 templates."""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from eventflow.config import Settings, get_settings

logger = logging.getLogger(__name__)


TEMPLATES = {
    "showing_confirmation.subject": "Property Showing Confirmed",
    "showing_confirmation.html": (
        "<p>Hi {{ visitorName }},</p>"
        "<p>Your showing is confirmed for <strong>{{ date }}</strong> at "
        "<strong>{{ startTime }}</strong>.</p>"
        "<p>Reference: {{ propertyId }}</p>"
    ),
    "showing_reminder.subject": "Reminder: property showing tomorrow",
    "showing_reminder.html": (
        "<p>This is a reminder of your property showing on "
        "<strong>{{ showingDateTime }}</strong>.</p>"
    ),
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(default=True),
    undefined=StrictUndefined,
)


def render_template(name: str, data: dict) -> tuple[str, str]:
    """Render ``name`` into (subject, html). Unknown variables raise."""
    subject = _env.get_template(f"{name}.subject").render(**data)
    html = _env.get_template(f"{name}.html").render(**data)
    return subject, html


class EmailSender:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def send(self, to_email: str, subject: str, html_body: str, text_body: str = "") -> None:
        """Send one message through the configured backend; raises on failure."""
        if self.settings.mail_backend == "ses":
            await self._send_ses(to_email, subject, html_body, text_body)
        else:
            await self._send_smtp(to_email, subject, html_body, text_body)

    async def _send_smtp(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        s = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{s.smtp_from_name} <{s.smtp_from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        await aiosmtplib.send(
            msg,
            hostname=s.smtp_host,
            port=s.smtp_port,
            username=s.smtp_user or None,
            password=s.smtp_password or None,
            start_tls=s.smtp_use_tls,
        )
        logger.info(f"Email sent to {to_email}")

    async def _send_ses(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        import asyncio

        import boto3

        s = self.settings
        client = boto3.client(
            "ses",
            region_name=s.aws_region,
            aws_access_key_id=s.aws_access_key_id or None,
            aws_secret_access_key=s.aws_secret_access_key or None,
        )
        body = {"Html": {"Charset": "UTF-8", "Data": html_body}}
        if text_body:
            body["Text"] = {"Charset": "UTF-8", "Data": text_body}

        # boto3 is blocking
        await asyncio.to_thread(
            client.send_email,
            Source=f"{s.smtp_from_name} <{s.smtp_from_email}>",
            Destination={"ToAddresses": [to_email]},
            Message={"Subject": {"Charset": "UTF-8", "Data": subject}, "Body": body},
        )
        logger.info(f"SES email sent to {to_email}")
