from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from certdesk.errors import ChannelDeliveryError
from certdesk.notifications.attachments import EncodedAttachment
from certdesk.notifications.dispatcher import DeliveryStatus, NotificationDispatcher
from certdesk.notifications.messaging import MessagingReceipt
from certdesk.notifications.templates import NotificationKind
from certdesk.tickets.models import PersonType, Priority, Ticket


class RecordingEmail:
    def __init__(self, *, delay: float = 0.0, error: Exception | None = None) -> None:
        self.delay = delay
        self.error = error
        self.messages = []

    async def send(self, message):
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.messages.append(message)
        return "mail-1"


class RecordingMessaging:
    def __init__(self, *, error: Exception | None = None, document_sent: bool = True) -> None:
        self.error = error
        self.document_sent = document_sent
        self.calls = []

    async def send(self, phone, text, *, attachment=None):
        self.calls.append((phone, text, attachment))
        if self.error is not None:
            raise self.error
        return MessagingReceipt(
            variant="z-api",
            message_id="wa-1",
            attempts=["z-api"],
            document_sent=attachment is not None and self.document_sent,
        )


def _ticket(**overrides) -> Ticket:
    values = {
        "id": "t-1",
        "code": "TK-007",
        "full_name": "Maria da Silva",
        "tax_id": "12345678909",
        "certificate_type": "criminal-federal",
        "person_type": PersonType.INDIVIDUAL,
        "priority": Priority.PREMIUM,
        "created_at": datetime.now(timezone.utc),
        "phone": "(11) 98765-4321",
        "email": "maria@example.com",
    }
    values.update(overrides)
    return Ticket(**values)


@pytest.mark.asyncio
async def test_both_channels_deliver_with_attachment():
    email, messaging = RecordingEmail(), RecordingMessaging()
    dispatcher = NotificationDispatcher(email_provider=email, messaging=messaging)
    attachment = EncodedAttachment(name="certidao.pdf", content_type="application/pdf", data="JVBERg==", size=4)

    result = await dispatcher.dispatch(_ticket(), kind=NotificationKind.RESULT, message="Done", attachment=attachment)

    assert result.email_sent and result.messaging_sent
    assert result.messaging.variant == "z-api"
    assert result.messaging.message_id == "wa-1"
    assert email.messages[0].attachment is attachment
    assert email.messages[0].to_email == "maria@example.com"
    assert "TK-007" in messaging.calls[0][1]
    assert result.to_dict()["email"]["status"] == "sent"


@pytest.mark.asyncio
async def test_messaging_is_skipped_for_tiers_without_it():
    messaging = RecordingMessaging()
    dispatcher = NotificationDispatcher(email_provider=RecordingEmail(), messaging=messaging)

    result = await dispatcher.dispatch(_ticket(priority=Priority.STANDARD), kind=NotificationKind.CONFIRMATION)

    assert result.email_sent
    assert result.messaging.status is DeliveryStatus.SKIPPED
    assert "padrao" in result.messaging.detail
    assert messaging.calls == []


@pytest.mark.asyncio
async def test_missing_contact_details_skip_channels():
    dispatcher = NotificationDispatcher(email_provider=RecordingEmail(), messaging=RecordingMessaging())

    result = await dispatcher.dispatch(_ticket(email="", phone=" "), kind=NotificationKind.RESULT)

    assert result.email.status is DeliveryStatus.SKIPPED
    assert result.email.detail == "no email address on ticket"
    assert result.messaging.detail == "no phone number on ticket"


@pytest.mark.asyncio
async def test_unconfigured_channels_are_skipped():
    dispatcher = NotificationDispatcher(email_provider=None, messaging=None)

    result = await dispatcher.dispatch(_ticket(), kind=NotificationKind.RESULT)

    assert result.email.detail == "email provider not configured"
    assert result.messaging.detail == "messaging gateway not configured"
    assert not result.email_sent and not result.messaging_sent


@pytest.mark.asyncio
async def test_slow_channel_times_out_without_blocking_the_other():
    dispatcher = NotificationDispatcher(
        email_provider=RecordingEmail(delay=1.0),
        messaging=RecordingMessaging(),
        channel_timeout=0.05,
    )

    result = await dispatcher.dispatch(_ticket(), kind=NotificationKind.RESULT)

    assert result.email.status is DeliveryStatus.FAILED
    assert "no response within" in result.email.detail
    assert result.messaging_sent


@pytest.mark.asyncio
async def test_channel_failure_is_reported_not_raised():
    error = ChannelDeliveryError("messaging", "All 4 wire formats failed", variant="x-api-key")
    dispatcher = NotificationDispatcher(email_provider=RecordingEmail(), messaging=RecordingMessaging(error=error))

    result = await dispatcher.dispatch(_ticket(), kind=NotificationKind.RESULT)

    assert result.email_sent
    assert result.messaging.status is DeliveryStatus.FAILED
    assert result.messaging.variant == "x-api-key"
    assert "wire formats failed" in result.messaging.detail


@pytest.mark.asyncio
async def test_document_rejection_is_noted_in_detail():
    dispatcher = NotificationDispatcher(
        email_provider=RecordingEmail(),
        messaging=RecordingMessaging(document_sent=False),
    )
    attachment = EncodedAttachment(name="nota.txt", content_type="text/plain", data="aGk=", size=2)

    result = await dispatcher.dispatch(_ticket(), kind=NotificationKind.RESULT, attachment=attachment)

    assert result.messaging_sent
    assert "document not supported" in result.messaging.detail
