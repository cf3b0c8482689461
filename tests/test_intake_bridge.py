from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from certdesk.errors import StorageUnavailableError, TicketValidationError
from certdesk.intake.bridge import IntakeBridge, draft_from_form
from certdesk.sync.cache import SqliteFallbackCache
from certdesk.tickets.models import PersonType, Priority, Ticket, TicketDraft


def _ticket_from(draft: TicketDraft) -> Ticket:
    return Ticket(
        id=draft.id or "generated",
        code=draft.code or "TK-100",
        full_name=draft.full_name,
        tax_id=draft.tax_id,
        certificate_type=draft.certificate_type,
        person_type=draft.person_type,
        priority=draft.priority,
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def api() -> AsyncMock:
    mock = AsyncMock()
    mock.generate_code = AsyncMock(return_value="TK-042")
    mock.create_ticket = AsyncMock(side_effect=_ticket_from)
    mock.find_ticket = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def bridge(api) -> IntakeBridge:
    return IntakeBridge(api, SqliteFallbackCache())


def _draft() -> TicketDraft:
    return draft_from_form(
        {"nomeCompleto": "Maria da Silva", "cpf": "123.456.789-09", "email": "maria@example.com"},
        certificate_type="criminal-federal",
    )


def test_form_aliases_are_resolved():
    draft = draft_from_form(
        {
            "nome": " João Souza ",
            "cnpj": "12.345.678/0001-99",
            "telefoneSolicitante": "(11) 3333-4444",
            "dataNascimento": "7/3/1990",
            "cidadeEmissao": "Campinas",
            "estadoEmissao": "SP",
        },
        certificate_type="cnd",
        plan="premium",
    )

    assert draft.full_name == "João Souza"
    assert draft.person_type == PersonType.ORGANIZATION
    assert draft.priority == Priority.PREMIUM
    assert draft.phone == "(11) 3333-4444"
    assert draft.birth_date == "1990-03-07"
    assert (draft.issuing_state, draft.issuing_city) == ("SP", "Campinas")


def test_unknown_plan_falls_back_to_standard():
    draft = draft_from_form({"nome": "Ana", "cpf": "1"}, certificate_type="cnd", plan="gold", state="RJ")

    assert draft.priority == Priority.STANDARD
    assert draft.person_type == PersonType.INDIVIDUAL
    assert draft.issuing_state == "RJ"


@pytest.mark.asyncio
async def test_submit_preallocates_code_and_creates(bridge, api):
    receipt = await bridge.submit(_draft())

    assert receipt.queued is False
    assert receipt.code == "TK-042"
    sent = api.create_ticket.await_args.args[0]
    assert sent.id == receipt.ticket_id
    assert sent.code == "TK-042"


@pytest.mark.asyncio
async def test_submit_rejects_incomplete_drafts(bridge, api):
    with pytest.raises(TicketValidationError):
        await bridge.submit(draft_from_form({"cpf": "123"}, certificate_type="cnd"))
    api.create_ticket.assert_not_awaited()


@pytest.mark.asyncio
async def test_outage_queues_draft_and_flush_creates_it_later(bridge, api):
    api.generate_code = AsyncMock(side_effect=StorageUnavailableError("down"))
    api.create_ticket = AsyncMock(side_effect=StorageUnavailableError("down"))

    receipt = await bridge.submit(_draft())

    assert receipt.queued is True
    assert receipt.code is None
    assert [draft.id for draft in bridge.pending_drafts()] == [receipt.ticket_id]

    still_down = await bridge.flush_pending()
    assert still_down == []
    assert len(bridge.pending_drafts()) == 1

    api.create_ticket = AsyncMock(side_effect=_ticket_from)
    created = await bridge.flush_pending()

    assert [ticket.id for ticket in created] == [receipt.ticket_id]
    assert bridge.pending_drafts() == []


@pytest.mark.asyncio
async def test_flush_reconciles_drafts_that_already_reached_the_store(bridge, api):
    api.create_ticket = AsyncMock(side_effect=StorageUnavailableError("timeout after commit"))
    receipt = await bridge.submit(_draft())
    queued = bridge.pending_drafts()[0]
    api.find_ticket = AsyncMock(return_value=_ticket_from(queued))
    api.create_ticket = AsyncMock()

    created = await bridge.flush_pending()

    assert [ticket.id for ticket in created] == [receipt.ticket_id]
    api.find_ticket.assert_awaited_with(receipt.ticket_id)
    api.create_ticket.assert_not_awaited()


@pytest.mark.asyncio
async def test_code_match_for_another_requester_is_not_reused(bridge, api):
    api.create_ticket = AsyncMock(side_effect=StorageUnavailableError("down"))
    await bridge.submit(_draft())
    queued = bridge.pending_drafts()[0]
    other = _ticket_from(queued)
    other.tax_id = "999.999.999-99"

    async def find(key):
        return other if key == queued.code else None

    api.find_ticket = AsyncMock(side_effect=find)
    api.create_ticket = AsyncMock(side_effect=_ticket_from)

    await bridge.flush_pending()

    api.create_ticket.assert_awaited_once()
