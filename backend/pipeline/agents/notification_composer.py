"""
Notification Composer
=====================
Builds and hands off the purchase confirmation email.

- The body always carries the public card URL and the access password.
- Premium plans get the card document attached as a PDF.
- Every message goes out from the same sender over the same transport,
  including ad-hoc messages from the /send-email endpoint.
"""

from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

import structlog

from pipeline.errors import NotificationError, RenderError
from schemas.card_models import PlanTier, ProvisionedCard, plan_spec
from services.document_renderer import DocumentRenderer
from services.mail_transport import IMailTransport

CONFIRMATION_SUBJECT = "Seu cartão digital está pronto!"


@dataclass
class RenderedDocuments:
    """Output of the rendering step: card HTML always, PDF for premium."""
    card_html: str
    pdf: Optional[bytes] = None


class NotificationComposer:
    def __init__(self, renderer: DocumentRenderer, transport: IMailTransport):
        self.renderer = renderer
        self.transport = transport
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(component="notification_composer", correlation_id=correlation_id)

    @property
    def sender(self) -> str:
        return self.transport.sender

    async def render_documents(
        self,
        card: ProvisionedCard,
        card_url: str,
        plan: PlanTier,
        correlation_id: Optional[str] = None,
    ) -> RenderedDocuments:
        log = self._get_logger(correlation_id)
        try:
            html = self.renderer.render_card_document(card, card_url)
            pdf = None
            if plan_spec(plan).includes_pdf:
                pdf = await self.renderer.render_pdf(html)
        except Exception as e:
            log.error("render_failed", card_id=card.id, error=str(e), error_type=type(e).__name__)
            raise RenderError(f"Could not render card document: {e}", reference=card.custom_url) from e

        log.info("documents_rendered", card_id=card.id, has_pdf=pdf is not None)
        return RenderedDocuments(card_html=html, pdf=pdf)

    def compose_confirmation(
        self,
        email: str,
        card_url: str,
        password: str,
        plan: PlanTier,
        slug: str,
        pdf: Optional[bytes] = None,
        expires_at: Optional[datetime] = None,
    ) -> EmailMessage:
        attach = bool(pdf) and plan_spec(plan).includes_pdf
        text, html = self.renderer.render_confirmation_email(
            card_url=card_url,
            password=password,
            plan=plan.value,
            has_attachment=attach,
            expires_at=expires_at,
        )

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = email
        message["Subject"] = CONFIRMATION_SUBJECT
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        if attach:
            message.add_attachment(
                pdf,
                maintype="application",
                subtype="pdf",
                filename=f"{slug}.pdf",
            )
        return message

    async def send_confirmation(
        self,
        email: str,
        card_url: str,
        password: str,
        plan: PlanTier,
        slug: str,
        pdf: Optional[bytes] = None,
        expires_at: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> EmailMessage:
        log = self._get_logger(correlation_id)
        try:
            message = self.compose_confirmation(email, card_url, password, plan, slug, pdf, expires_at)
        except Exception as e:
            raise NotificationError(f"Could not compose confirmation email: {e}", reference=slug) from e

        await self._deliver(message, log)
        log.info("confirmation_sent", to=email, plan=plan.value, attachments=len(list(message.iter_attachments())))
        return message

    async def send_raw(self, to: str, subject: str, body: str, is_html: bool = False) -> EmailMessage:
        """Direct passthrough used by the /send-email endpoint."""
        log = self._get_logger()
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        if is_html:
            message.set_content(body, subtype="html")
        else:
            message.set_content(body)

        await self._deliver(message, log)
        log.info("email_sent", to=to, is_html=is_html)
        return message

    async def _deliver(self, message: EmailMessage, log) -> None:
        try:
            await self.transport.send(message)
        except Exception as e:
            log.error("email_send_failed", to=message["To"], error=str(e), error_type=type(e).__name__)
            raise NotificationError(f"Could not send email to {message['To']}: {e}") from e
