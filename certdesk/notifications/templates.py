"""Customer-facing notification bodies (pt-BR, as delivered to requesters)."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from html import escape

from certdesk.tickets.models import Ticket

PORTAL_NAME = "Portal Certidão"
PORTAL_URL = "www.portalcertidao.org"
DELIVERY_ESTIMATE = "Depende da sua Comarca, maioria até 2 horas"

CERTIFICATE_NAMES: dict[str, str] = {
    "criminal-federal": "Certidão Negativa Criminal Federal",
    "criminal-estadual": "Certidão Negativa Criminal Estadual",
    "antecedentes-pf": "Antecedente Criminal de Polícia Federal",
    "eleitoral": "Certidão de Quitação Eleitoral",
    "civil-federal": "Certidão Negativa Cível Federal",
    "civil-estadual": "Certidão Negativa Cível Estadual",
    "cnd": "Certidão Negativa de Débito (CND)",
    "cpf-regular": "Certidão CPF Regular",
}


class NotificationKind(str, Enum):
    """Which customer notification is being sent."""

    CONFIRMATION = "confirmation"
    RESULT = "result"


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def certificate_label(certificate_type: str) -> str:
    return CERTIFICATE_NAMES.get(certificate_type, certificate_type)


def messaging_text(ticket: Ticket, kind: NotificationKind, message: str = "") -> str:
    label = certificate_label(ticket.certificate_type)
    if kind is NotificationKind.CONFIRMATION:
        lines = [
            "✅ *Pagamento Confirmado!*",
            "",
            f"Olá {ticket.first_name}, seu pagamento foi confirmado com sucesso! 🎉",
            "",
            "📋 *Detalhes do Pedido:*",
            f"• Código: *{ticket.code}*",
            f"• Tipo: {label}",
            f"• Prazo: {DELIVERY_ESTIMATE}",
            "• Status: Em Processamento",
            "",
            "📧 Você receberá sua certidão por email e WhatsApp assim que estiver pronta.",
        ]
    else:
        lines = [
            "✅ *Certidão Pronta!*",
            "",
            f"Olá {ticket.first_name}, sua certidão está pronta! 🎉",
            "",
            "📋 *Detalhes:*",
            f"• Código: *{ticket.code}*",
            f"• Tipo: {label}",
            "• Status: Concluída",
        ]
        if message.strip():
            lines += ["", "📝 *Informações Adicionais:*", message.strip()]
    lines += ["", PORTAL_NAME, PORTAL_URL]
    return "\n".join(lines)


def render_email(ticket: Ticket, kind: NotificationKind, message: str = "") -> RenderedEmail:
    label = certificate_label(ticket.certificate_type)
    if kind is NotificationKind.CONFIRMATION:
        subject = f"Confirmação de Pagamento - Ticket {ticket.code}"
        heading = "Pagamento Confirmado!"
        intro = "Seu pagamento foi confirmado com sucesso. Seu pedido está sendo processado."
        details = [
            ("Código do Ticket", ticket.code),
            ("Tipo de Certidão", label),
            ("Prazo de Entrega", DELIVERY_ESTIMATE),
            ("Status", "Em Processamento"),
        ]
    else:
        subject = f"Sua certidão está pronta - Ticket {ticket.code}"
        heading = "Certidão Pronta!"
        intro = "Sua solicitação foi concluída. O documento segue em anexo quando disponível."
        details = [
            ("Código do Ticket", ticket.code),
            ("Tipo de Certidão", label),
            ("Status", "Concluída"),
        ]

    detail_html = "".join(f"<p><strong>{escape(key)}:</strong> {escape(value)}</p>" for key, value in details)
    extra_html = ""
    extra_text = ""
    if message.strip():
        extra_html = f"<h3>Informações Adicionais</h3><p>{escape(message.strip())}</p>"
        extra_text = f"\nInformações Adicionais:\n{message.strip()}\n"

    html = (
        '<!DOCTYPE html><html lang="pt-BR"><head><meta charset="UTF-8"></head>'
        '<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">'
        f'<h1 style="color: #28a745;">{escape(heading)}</h1>'
        f"<p>Olá <strong>{escape(ticket.full_name)}</strong>,</p>"
        f"<p>{escape(intro)}</p>"
        f"{detail_html}{extra_html}"
        f'<p>Dúvidas acesse: <a href="https://{PORTAL_URL}">{PORTAL_URL}</a></p>'
        f'<p style="font-size: 12px; color: #666;">Este é um email automático. {PORTAL_NAME}.</p>'
        "</body></html>"
    )
    detail_text = "\n".join(f"{key}: {value}" for key, value in details)
    text = f"{heading}\n\nOlá {ticket.full_name},\n\n{intro}\n\n{detail_text}\n{extra_text}\n{PORTAL_NAME}\n{PORTAL_URL}"
    return RenderedEmail(subject=subject, html=html, text=text)
