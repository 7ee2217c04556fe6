"""
Email Service - transactional mail via SendGrid
================================================
Only one message is sent by the pipeline today: the welcome email for
auto-created guest accounts, which carries the temporary password and the
login link to the buyer's purchases page.

pip install sendgrid structlog
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import escape
from typing import Optional

import structlog
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = structlog.get_logger().bind(component="email")


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: str = ""
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# SENDERS
# =============================================================================

class IEmailSender(ABC):

    @abstractmethod
    async def send(self, message: OutgoingEmail) -> Optional[str]:
        """Send and return the provider message id when available."""
        pass


class SendGridEmailSender(IEmailSender):

    def __init__(self, api_key: str, from_email: str):
        self._client = SendGridAPIClient(api_key)
        self._from_email = from_email

    async def send(self, message: OutgoingEmail) -> Optional[str]:
        mail = Mail(
            from_email=self._from_email,
            to_emails=message.to,
            subject=message.subject,
            html_content=message.html,
            plain_text_content=message.text or None,
        )
        response = await asyncio.to_thread(self._client.send, mail)
        if response.status_code >= 400:
            raise RuntimeError(f"SendGrid rejected message: HTTP {response.status_code}")
        return response.headers.get("X-Message-Id")


class InMemoryEmailSender(IEmailSender):
    """Collects messages instead of sending them."""

    def __init__(self):
        self.outbox: list[OutgoingEmail] = []

    async def send(self, message: OutgoingEmail) -> Optional[str]:
        self.outbox.append(message)
        return f"mem-{uuid.uuid4().hex[:16]}"


# =============================================================================
# EMAIL SERVICE
# =============================================================================

class EmailService:
    """Renders pipeline emails and hands them to the configured sender."""

    def __init__(self, sender: IEmailSender, login_url: str, support_email: str = ""):
        self.sender = sender
        self.login_url = login_url
        self.support_email = support_email

    def build_welcome_email(
        self, email: str, password: str, display_name: str
    ) -> OutgoingEmail:
        name = escape(display_name or email.split("@")[0])
        html = f"""
        <h2>Welcome, {name}!</h2>
        <p>Your purchase is complete. We created an account so you can access
        your content any time.</p>
        <p><strong>Email:</strong> {escape(email)}<br/>
        <strong>Temporary password:</strong> {escape(password)}</p>
        <p><a href="{self.login_url}">Log in to view your purchases</a></p>
        <p>Please change your password after your first login.</p>
        """
        text = (
            f"Welcome, {display_name or email}!\n\n"
            f"Email: {email}\nTemporary password: {password}\n\n"
            f"Log in to view your purchases: {self.login_url}\n"
        )
        return OutgoingEmail(
            to=email,
            subject="Your purchase is ready - account details inside",
            html=html,
            text=text,
        )

    async def send_welcome_email(
        self, email: str, password: str, display_name: str
    ) -> Optional[str]:
        message = self.build_welcome_email(email, password, display_name)
        message_id = await self.sender.send(message)
        logger.info("welcome_email_sent", to=email, message_id=message_id)
        return message_id
