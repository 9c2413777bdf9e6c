import logging
import os
import smtplib
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
SENDER_ADDRESS = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
PRODUCT_NAME = os.getenv("EMAIL_SENDER_NAME", "Signify")


class SignatureRequest(BaseModel):
    """A signing invitation or reminder for one recipient."""

    recipient_email: str
    recipient_name: Optional[str] = None
    requester_name: str
    requester_email: str
    document_name: str
    link: str
    expires_at: Optional[datetime] = None
    reminder: bool = False

    @property
    def subject(self) -> str:
        prefix = "Reminder" if self.reminder else "Signature Requested"
        return f"{prefix}: {self.document_name}"

    @property
    def sender_name(self) -> str:
        return f"{self.requester_name} via {PRODUCT_NAME}" if self.requester_name else PRODUCT_NAME

    @property
    def action(self) -> str:
        if self.reminder:
            return f"This is a reminder that {self.requester_name} is waiting for your signature."
        return f"{self.requester_name} sent you a document to review and sign."

    @property
    def valid_until(self) -> str:
        return self.expires_at.strftime("%Y-%m-%d") if self.expires_at else "no expiry"

    def text(self) -> str:
        greeting = f"Hi {self.recipient_name}," if self.recipient_name else "Hello,"
        return (
            f"{greeting}\n\n"
            f"{self.action}\n"
            f'Document: "{self.document_name}"\n'
            f"Link valid until: {self.valid_until}\n\n"
            f"Open document: {self.link}\n"
        )

    def html(self) -> str:
        link = escape(self.link)
        heading = "Signature reminder" if self.reminder else "Signature requested"
        return f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{heading}</h2>
      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{escape(self.action)}</p>
      <p style="font-size: 14px; color: #1e293b;">{escape(self.document_name)} &middot; valid until {escape(self.valid_until)}</p>
      <div style="margin: 24px 0;">
        <a href="{link}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          Review &amp; Sign
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link}">{link}</a></p>
    </div>
  </body>
</html>
"""


def send_signature_request(request: SignatureRequest):
    send_email(
        request.recipient_email,
        request.subject,
        request.text(),
        html_body=request.html(),
        sender_name=request.sender_name,
        reply_to=request.requester_email,
    )


def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: Optional[str] = None,
    sender_name: Optional[str] = None,
    reply_to: Optional[str] = None,
):
    """Deliver over SMTP, or log the message when no credentials are configured."""
    from_value = formataddr((sender_name or PRODUCT_NAME, SENDER_ADDRESS))
    if not (SMTP_USER and SMTP_PASSWORD):
        logger.info("email stub: from=%s to=%s subject=%s\n%s", from_value, to, subject, body)
        return
    msg = EmailMessage()
    msg["From"] = from_value
    msg["To"] = to
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.set_content(body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as smtp:
        smtp.starttls()
        smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(msg)
