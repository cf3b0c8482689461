from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from certdesk.tickets.consolidation import (
    CONFIRMATION_PHRASE,
    RESULT_PHRASE,
    consolidate,
    consolidated_view,
)
from certdesk.tickets.models import AttachmentRef, HistoryEntry
from certdesk.tickets.state import TicketStatus

BASE = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _entry(
    index: int,
    previous: TicketStatus,
    new: TicketStatus,
    *,
    author: str = "system",
    message: str = "",
    email_sent: bool = False,
    messaging_sent: bool = False,
    attachment: AttachmentRef | None = None,
    metadata: dict[str, str] | None = None,
) -> HistoryEntry:
    return HistoryEntry(
        id=f"h-{index}",
        timestamp=BASE + timedelta(seconds=index),
        author=author,
        previous_status=previous,
        new_status=new,
        message=message,
        email_sent=email_sent,
        messaging_sent=messaging_sent,
        attachment=attachment,
        metadata=metadata or {},
    )


def test_complementary_channel_entries_merge_into_one():
    ledger = [
        _entry(0, TicketStatus.GERAL, TicketStatus.EM_OPERACAO, message="Payment confirmed. Ticket in processing."),
        _entry(1, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message="Confirmation email sent to a@b.com", email_sent=True),
        _entry(2, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message="Confirmation message sent to 5511", messaging_sent=True),
    ]

    result = consolidate(ledger)

    assert len(result) == 2
    assert result[0].id == "h-0"
    merged = result[1]
    assert merged.email_sent and merged.messaging_sent
    assert merged.message == CONFIRMATION_PHRASE
    assert merged.timestamp == ledger[2].timestamp
    assert merged.metadata["consolidated_from"] == "h-1,h-2"


def test_result_notifications_use_result_phrase():
    ledger = [
        _entry(0, TicketStatus.CONCLUIDO, TicketStatus.CONCLUIDO, messaging_sent=True, message="Result message sent to 5511", metadata={"notification": "result"}),
        _entry(1, TicketStatus.CONCLUIDO, TicketStatus.CONCLUIDO, email_sent=True, message="Result email sent to a@b.com", metadata={"notification": "result"}),
    ]

    (merged,) = consolidate(ledger)

    assert merged.message == RESULT_PHRASE


def test_lone_verbose_channel_entry_is_dropped_but_consolidated_phrase_is_kept():
    ledger = [
        _entry(0, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message="Email sent to a@b.com", email_sent=True),
        _entry(1, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message=CONFIRMATION_PHRASE, email_sent=True, messaging_sent=True),
    ]

    result = consolidate(ledger)

    assert [entry.id for entry in result] == ["h-1"]


def test_human_and_attachment_entries_are_always_kept():
    attachment = AttachmentRef(name="certidao.pdf", content_type="application/pdf", locator="att-1")
    ledger = [
        _entry(0, TicketStatus.EM_ATENDIMENTO, TicketStatus.EM_ATENDIMENTO, author="ana", message="Waiting on registry"),
        _entry(1, TicketStatus.EM_ATENDIMENTO, TicketStatus.EM_ATENDIMENTO, message="Email sent to a@b.com", email_sent=True, attachment=attachment),
    ]

    assert [entry.id for entry in consolidate(ledger)] == ["h-0", "h-1"]


def test_unrecognized_system_entries_fail_open():
    ledger = [_entry(0, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message="Registry portal offline")]

    assert consolidate(ledger) == ledger


def test_same_channel_pairs_are_not_merged():
    ledger = [
        _entry(0, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message="Batch 1", email_sent=True),
        _entry(1, TicketStatus.EM_OPERACAO, TicketStatus.EM_OPERACAO, message="Batch 2", email_sent=True),
    ]

    assert [entry.id for entry in consolidate(ledger)] == ["h-0", "h-1"]


def test_view_caps_rendered_entries_and_reports_counts():
    ledger = [
        _entry(index, TicketStatus.EM_ATENDIMENTO, TicketStatus.EM_ATENDIMENTO, author="ana", message=f"note {index}")
        for index in range(60)
    ]
    ledger.append(_entry(60, TicketStatus.EM_ATENDIMENTO, TicketStatus.EM_ATENDIMENTO, message="Email sent to a@b.com", email_sent=True))

    view = consolidated_view(ledger, limit=50)

    assert view.raw_count == 61
    assert view.consolidated_count == 60
    assert view.suppressed_count == 1
    assert view.hidden_count == 10
    assert len(view.entries) == 50
    assert view.entries[-1].id == "h-59"


def test_view_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        consolidated_view([], limit=0)
