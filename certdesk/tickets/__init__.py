"""Ticket domain: state machine, ledger and consolidation view."""

from .models import HistoryEntry, PersonType, Priority, Ticket, TicketDraft
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "HistoryEntry",
    "PersonType",
    "Priority",
    "Ticket",
    "TicketDraft",
    "TicketStateMachine",
    "TicketStatus",
]
