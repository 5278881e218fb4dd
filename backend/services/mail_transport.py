# services/mail_transport.py
# ============================================================================
# DIGITAL CARD BACKEND — MAIL TRANSPORT
# ============================================================================
# One SMTP account shared by every outbound message of the service.
# ============================================================================

import asyncio
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formataddr
from typing import List

import structlog

logger = structlog.get_logger(component="mail_transport")


class MailTransportError(RuntimeError):
    """The message was not accepted by the mail server."""


class IMailTransport(ABC):
    """Outbound mail interface"""

    sender: str

    @abstractmethod
    async def send(self, message: EmailMessage) -> None:
        pass


class InMemoryMailTransport(IMailTransport):
    """Collects messages instead of sending them."""

    def __init__(self, sender: str = "Cartão Digital <no-reply@example.com>"):
        self.sender = sender
        self.outbox: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)


class SmtpMailTransport(IMailTransport):
    """SMTP over implicit TLS (port 465), run in a worker thread."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_name: str = "",
        timeout: float = 20.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.timeout = timeout
        self.sender = formataddr((from_name, username)) if from_name else username

    async def send(self, message: EmailMessage) -> None:
        if "From" not in message:
            message["From"] = self.sender

        def deliver():
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as smtp:
                smtp.login(self.username, self._password)
                smtp.send_message(message)

        try:
            await asyncio.get_running_loop().run_in_executor(None, deliver)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("smtp_send_failed", host=self.host, to=message.get("To"), error=str(e))
            raise MailTransportError(str(e)) from e

        logger.info("smtp_message_sent", to=message.get("To"), subject=message.get("Subject"))
