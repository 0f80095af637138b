"""Confirmation email notifier.

Learn: The session manager only needs one thing from email delivery:
"send this confirmation token to this address, tell me if it worked".
That contract is the Notifier protocol. SmtpNotifier is the production
implementation (aiosmtplib); tests plug in a recording fake.

send() never raises. Delivery failures are logged and reported as False.
"""

from email.message import EmailMessage
from typing import Optional, Protocol

import aiosmtplib
import structlog

from tlca.config import settings

logger = structlog.get_logger()

SUBJECT = "[TLCA] Email address validation"


class Notifier(Protocol):
    async def send(self, to: str, token: str, *, username: str) -> bool:
        ...


def build_confirmation_message(
    to: str, token: str, username: str, sender: str, url_base: str
) -> EmailMessage:
    """Compose the email carrying the confirmation link."""
    validation_url = f"{url_base.rstrip('/')}/{username}/{token}"

    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = SUBJECT
    message.set_content(
        "Hello,\n\n"
        "Thank you for creating an account on the TLCA platform.\n\n"
        "In order to be able to connect on the platform, you first need to "
        "validate your email address. You can do so by visiting the "
        f"following page:\n\n{validation_url}\n\n"
        "The TLCA team\n"
    )
    message.add_alternative(
        "<p>Hello,</p>"
        "<p>Thank you for creating an account on the TLCA platform.</p>"
        "<p>In order to be able to connect on the platform, you first need to "
        "validate your email address. You can do so by visiting the following "
        f'page:</p><p><a href="{validation_url}">{validation_url}</a></p>'
        "<p>The TLCA team</p>",
        subtype="html",
    )
    return message


class SmtpNotifier:
    """Sends confirmation emails over SMTP."""

    def __init__(
        self,
        hostname: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
        url_base: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.hostname = hostname or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username if username is not None else settings.smtp_username
        self.password = password if password is not None else settings.smtp_password
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.sender = sender or settings.mail_sender
        self.url_base = url_base or settings.confirmation_url_base
        self.timeout = timeout or settings.notify_timeout_seconds

    async def send(self, to: str, token: str, *, username: str) -> bool:
        message = build_confirmation_message(
            to, token, username, self.sender, self.url_base
        )
        try:
            await aiosmtplib.send(
                message,
                hostname=self.hostname,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=self.use_tls,
                timeout=self.timeout,
            )
        except Exception as e:
            logger.error("notifier.send_failed", username=username, error=str(e))
            return False

        logger.info("notifier.sent", username=username)
        return True


def get_notifier() -> Notifier:
    """FastAPI dependency: the notifier used for confirmation emails."""
    return SmtpNotifier()
