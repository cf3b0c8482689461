from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from certdesk.notifications.dispatcher import ChannelOutcome, DeliveryStatus, DispatchResult
from certdesk.notifications.templates import NotificationKind
from certdesk.tickets.models import Priority, TicketDraft
from certdesk.tickets.repository import InMemoryTicketRepository
from certdesk.tickets.store import TicketStore


def make_draft(**overrides) -> TicketDraft:
    values = {
        "full_name": "Maria da Silva",
        "tax_id": "123.456.789-09",
        "certificate_type": "criminal-federal",
        "priority": Priority.PREMIUM,
        "phone": "(11) 98765-4321",
        "email": "maria@example.com",
    }
    values.update(overrides)
    return TicketDraft(**values)


def make_dispatch_result(
    kind: NotificationKind = NotificationKind.RESULT,
    *,
    email: DeliveryStatus = DeliveryStatus.SENT,
    messaging: DeliveryStatus = DeliveryStatus.SENT,
) -> DispatchResult:
    return DispatchResult(
        kind=kind,
        email=ChannelOutcome("email", email, "email detail"),
        messaging=ChannelOutcome("messaging", messaging, "messaging detail", variant="z-api"),
    )


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def dispatcher() -> AsyncMock:
    mock = AsyncMock()
    mock.dispatch = AsyncMock(side_effect=lambda ticket, *, kind, **_: make_dispatch_result(kind))
    return mock


@pytest.fixture
def store(repository, dispatcher) -> TicketStore:
    return TicketStore(repository, dispatcher=dispatcher, storage_timeout=2.0)


@pytest.fixture
def draft_factory():
    return make_draft


@pytest.fixture
def dispatch_result_factory():
    return make_dispatch_result
