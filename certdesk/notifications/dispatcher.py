"""Notification Dispatcher: one customer notification over email and messaging."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from opentelemetry import trace

from certdesk.errors import ChannelDeliveryError
from certdesk.tickets.models import Priority, Ticket

from .attachments import EncodedAttachment
from .email import EmailMessage, EmailProvider
from .messaging import MessagingFallbackChain
from .templates import NotificationKind, messaging_text, render_email

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

EMAIL = "email"
MESSAGING = "messaging"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ChannelOutcome:
    """Result of one channel for one notification."""

    channel: str
    status: DeliveryStatus
    detail: str = ""
    variant: str | None = None
    message_id: str | None = None

    @property
    def sent(self) -> bool:
        return self.status is DeliveryStatus.SENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "status": self.status.value,
            "detail": self.detail,
            "variant": self.variant,
            "message_id": self.message_id,
        }


@dataclass(frozen=True, slots=True)
class DispatchResult:
    kind: NotificationKind
    email: ChannelOutcome
    messaging: ChannelOutcome

    @property
    def email_sent(self) -> bool:
        return self.email.sent

    @property
    def messaging_sent(self) -> bool:
        return self.messaging.sent

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "email": self.email.to_dict(),
            "messaging": self.messaging.to_dict(),
        }


class NotificationDispatcher:
    """Deliver a notification over both channels concurrently.

    Each channel runs under its own timeout and its failure is folded into the
    returned :class:`DispatchResult`; nothing is raised to the caller. The
    dispatcher keeps no per-ticket state, so re-invoking it resends.
    """

    def __init__(
        self,
        *,
        email_provider: EmailProvider | None,
        messaging: MessagingFallbackChain | None,
        channel_timeout: float = 45.0,
        messaging_priorities: Iterable[Priority | str] = (Priority.PREMIUM,),
    ) -> None:
        self._email = email_provider
        self._messaging = messaging
        self._channel_timeout = channel_timeout
        self._messaging_priorities = {Priority(value) for value in messaging_priorities}

    async def dispatch(
        self,
        ticket: Ticket,
        *,
        kind: NotificationKind,
        message: str = "",
        attachment: EncodedAttachment | None = None,
        attachment_timeout: float = 0.0,
    ) -> DispatchResult:
        timeout = self._channel_timeout + (attachment_timeout if attachment is not None else 0.0)
        email_outcome, messaging_outcome = await asyncio.gather(
            self._run(EMAIL, ticket, timeout, self._send_email(ticket, kind, message, attachment)),
            self._run(MESSAGING, ticket, timeout, self._send_messaging(ticket, kind, message, attachment)),
        )
        result = DispatchResult(kind=kind, email=email_outcome, messaging=messaging_outcome)
        logger.info(
            "Ticket %s %s notification: email=%s messaging=%s",
            ticket.code,
            kind.value,
            email_outcome.status.value,
            messaging_outcome.status.value,
        )
        return result

    async def _run(self, channel: str, ticket: Ticket, timeout: float, operation) -> ChannelOutcome:
        with tracer.start_as_current_span(f"notification.{channel}") as span:
            span.set_attribute("ticket.code", ticket.code)
            try:
                outcome = await asyncio.wait_for(operation, timeout=timeout)
            except asyncio.TimeoutError:
                detail = f"[{channel}] no response within {timeout:.0f}s"
                logger.warning("Ticket %s %s", ticket.code, detail)
                outcome = ChannelOutcome(channel, DeliveryStatus.FAILED, detail)
            except ChannelDeliveryError as exc:
                logger.warning("Ticket %s notification failed: %s", ticket.code, exc)
                outcome = ChannelOutcome(channel, DeliveryStatus.FAILED, str(exc), variant=exc.variant)
            span.set_attribute("notification.status", outcome.status.value)
            return outcome

    async def _send_email(
        self,
        ticket: Ticket,
        kind: NotificationKind,
        message: str,
        attachment: EncodedAttachment | None,
    ) -> ChannelOutcome:
        if not ticket.email.strip():
            return ChannelOutcome(EMAIL, DeliveryStatus.SKIPPED, "no email address on ticket")
        if self._email is None:
            return ChannelOutcome(EMAIL, DeliveryStatus.SKIPPED, "email provider not configured")
        rendered = render_email(ticket, kind, message)
        message_id = await self._email.send(
            EmailMessage(
                to_email=ticket.email.strip(),
                to_name=ticket.full_name,
                subject=rendered.subject,
                html=rendered.html,
                text=rendered.text,
                attachment=attachment,
            )
        )
        return ChannelOutcome(EMAIL, DeliveryStatus.SENT, f"sent to {ticket.email.strip()}", message_id=message_id)

    async def _send_messaging(
        self,
        ticket: Ticket,
        kind: NotificationKind,
        message: str,
        attachment: EncodedAttachment | None,
    ) -> ChannelOutcome:
        if ticket.priority not in self._messaging_priorities:
            return ChannelOutcome(MESSAGING, DeliveryStatus.SKIPPED, f"not sent for the {ticket.priority.value} tier")
        if not ticket.phone.strip():
            return ChannelOutcome(MESSAGING, DeliveryStatus.SKIPPED, "no phone number on ticket")
        if self._messaging is None:
            return ChannelOutcome(MESSAGING, DeliveryStatus.SKIPPED, "messaging gateway not configured")
        receipt = await self._messaging.send(ticket.phone, messaging_text(ticket, kind, message), attachment=attachment)
        detail = f"sent to {ticket.phone.strip()}"
        if attachment is not None and not receipt.document_sent:
            detail += " (document not supported by gateway)"
        return ChannelOutcome(
            MESSAGING,
            DeliveryStatus.SENT,
            detail,
            variant=receipt.variant,
            message_id=receipt.message_id,
        )
