# services/document_renderer.py
# ============================================================================
# DIGITAL CARD BACKEND — DOCUMENT RENDERER
# ============================================================================
# jinja2 templates for the confirmation email and the card document, and
# HTML -> PDF conversion for plans that ship a printable copy.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from schemas.card_models import ProvisionedCard

logger = structlog.get_logger(component="document_renderer")


TEMPLATES: Dict[str, str] = {
    "confirmation_email.html": """\
<!DOCTYPE html>
<html lang="pt-BR">
<body style="font-family: Arial, sans-serif; color: #333;">
  <h2 style="color: #e0245e;">Seu cartão digital está pronto!</h2>
  <p>Obrigado pela compra do plano <strong>{{ plan_label }}</strong>.</p>
  <p>Acesse seu cartão em: <a href="{{ card_url }}">{{ card_url }}</a></p>
  <p>Senha de acesso: <strong>{{ password }}</strong></p>
  {% if has_attachment %}
  <p>Enviamos em anexo uma versão em PDF para você guardar ou imprimir.</p>
  {% endif %}
  {% if expires_at %}
  <p style="font-size: 12px; color: #888;">Válido até {{ expires_at.strftime("%d/%m/%Y") }}.</p>
  {% endif %}
  <p style="font-size: 12px; color: #888;">&copy; {{ year }}</p>
</body>
</html>
""",
    "confirmation_email.txt": """\
Seu cartão digital está pronto!

Plano: {{ plan_label }}
Acesse: {{ card_url }}
Senha de acesso: {{ password }}
{% if has_attachment %}
Uma versão em PDF segue em anexo.
{% endif %}
""",
    "card_document.html": """\
<!DOCTYPE html>
<html lang="pt-BR">
<head>
  <meta charset="utf-8">
  <style>
    @page { size: A4; margin: 18mm; }
    body { font-family: Georgia, serif; color: #222; text-align: center; }
    h1 { color: #e0245e; font-size: 32px; }
    .photos img { max-width: 45%; margin: 6px; border-radius: 8px; }
    .fields { text-align: left; margin: 24px auto; width: 80%; }
    .access { margin-top: 32px; font-size: 14px; }
  </style>
</head>
<body>
  <h1>{{ title }}</h1>
  <div class="fields">
    {% for key, value in fields.items() %}
    <p><strong>{{ key }}</strong>: {{ value }}</p>
    {% endfor %}
  </div>
  <div class="photos">
    {% for photo in card.content.photos %}
    <img src="{{ photo.url }}" alt="{{ photo.name }}">
    {% endfor %}
  </div>
  {% if card.content.music_link %}
  <p>Nossa música: {{ card.content.music_link }}</p>
  {% endif %}
  <div class="access">
    <p>{{ card_url }}</p>
    <p>Senha: {{ card.password }}</p>
  </div>
</body>
</html>
""",
}

PLAN_LABELS = {"basic": "Básico", "premium": "Premium"}


class IPdfEngine(ABC):
    """HTML -> PDF bytes."""

    @abstractmethod
    def write_pdf(self, html: str, base_url: Optional[str] = None) -> bytes:
        pass


class WeasyPrintEngine(IPdfEngine):
    def write_pdf(self, html: str, base_url: Optional[str] = None) -> bytes:
        from weasyprint import HTML  # lazy import: needs system pango/cairo
        return HTML(string=html, base_url=base_url).write_pdf()


class DocumentRenderer:
    """Renders every document the fulfillment workflow sends out."""

    def __init__(self, pdf_engine: Optional[IPdfEngine] = None):
        self.env = Environment(
            loader=DictLoader(TEMPLATES),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.pdf_engine = pdf_engine or WeasyPrintEngine()

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        return self.env.get_template(template_name).render(**context)

    def render_confirmation_email(
        self,
        card_url: str,
        password: str,
        plan: str,
        has_attachment: bool,
        expires_at: Optional[datetime] = None,
    ) -> tuple[str, str]:
        """Return (plain_text, html) bodies."""
        context = {
            "card_url": card_url,
            "password": password,
            "plan_label": PLAN_LABELS.get(plan, plan.title()),
            "has_attachment": has_attachment,
            "expires_at": expires_at,
            "year": datetime.utcnow().year,
        }
        return (
            self.render("confirmation_email.txt", context),
            self.render("confirmation_email.html", context),
        )

    def render_card_document(self, card: ProvisionedCard, card_url: str) -> str:
        fields = card.content.text_fields()
        fields.pop("music_link", None)
        title = fields.pop("title", None) or card.custom_url
        return self.render("card_document.html", {
            "card": card,
            "card_url": card_url,
            "title": title,
            "fields": fields,
        })

    async def render_pdf(self, html: str, base_url: Optional[str] = None) -> bytes:
        pdf_bytes = await asyncio.get_running_loop().run_in_executor(
            None, self.pdf_engine.write_pdf, html, base_url
        )
        if not pdf_bytes:
            raise RuntimeError("PDF engine returned no bytes")
        logger.info("pdf_rendered", size_bytes=len(pdf_bytes))
        return pdf_bytes
