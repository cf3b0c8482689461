"""Append-only history ledger helpers.

The ledger is the ordered list of :class:`HistoryEntry` records owned by a
ticket. Entries are never edited, reordered or removed; a ticket's ``status``
is always derivable by replaying its ledger.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Mapping, Sequence

from .models import AttachmentRef, HistoryEntry, Ticket
from .state import TicketStateMachine, TicketStatus

OVERRIDE_FLAG = "override"
NOTIFICATION_FLAG = "notification"


def generate_record_id(position: int, *, now_ms: int | None = None) -> str:
    """Build a record id from creation time, ledger position and a random suffix.

    The position component orders same-millisecond appends within one ticket;
    the random suffix separates tickets that share both millisecond and position.
    """

    if position < 0:
        raise ValueError("position must not be negative")
    timestamp = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    return f"h-{timestamp}-{position:05d}-{secrets.token_hex(4)}"


def record_position(record_id: str) -> int:
    """Return the ledger position encoded in ``record_id``."""

    try:
        return int(record_id.split("-")[2])
    except (IndexError, ValueError) as exc:
        raise ValueError(f"Malformed record id: {record_id!r}") from exc


def new_entry(
    ticket: Ticket,
    *,
    author: str,
    new_status: TicketStatus,
    message: str = "",
    email_sent: bool = False,
    messaging_sent: bool = False,
    attachment: AttachmentRef | None = None,
    metadata: Mapping[str, str] | None = None,
    now: datetime | None = None,
) -> HistoryEntry:
    """Create the next entry for ``ticket`` without appending it."""

    timestamp = now or datetime.now(timezone.utc)
    return HistoryEntry(
        id=generate_record_id(len(ticket.history), now_ms=int(timestamp.timestamp() * 1000)),
        timestamp=timestamp,
        author=author,
        previous_status=ticket.status,
        new_status=new_status,
        message=message,
        email_sent=email_sent,
        messaging_sent=messaging_sent,
        attachment=attachment,
        metadata=dict(metadata or {}),
    )


def apply_entry(ticket: Ticket, entry: HistoryEntry) -> Ticket:
    """Return a copy of ``ticket`` with ``entry`` appended and workflow fields derived from it."""

    completed_at = ticket.completed_at
    if entry.new_status == TicketStatus.CONCLUIDO:
        completed_at = completed_at if ticket.status == TicketStatus.CONCLUIDO else entry.timestamp
    else:
        completed_at = None
    return replace(
        ticket,
        status=entry.new_status,
        completed_at=completed_at,
        history=[*ticket.history, entry],
    )


def replay_status(history: Sequence[HistoryEntry], *, initial: TicketStatus | None = None) -> TicketStatus:
    """Fold the ledger into the status it implies.

    Raises ``ValueError`` when an entry does not start from the running status
    or takes an edge the state machine forbids. Override entries and
    notification records are exempt from the edge check.
    """

    status = initial or TicketStateMachine.initial_state()
    for entry in history:
        if entry.previous_status != status:
            raise ValueError(
                f"Ledger discontinuity at {entry.id}: expected {status.value}, found {entry.previous_status.value}"
            )
        exempt = entry.metadata.get(OVERRIDE_FLAG) == "true" or NOTIFICATION_FLAG in entry.metadata
        if not exempt:
            TicketStateMachine.assert_transition(status, entry.new_status)
        status = entry.new_status
    return status
