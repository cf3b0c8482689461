"""Read-only display projection of a ticket's history ledger.

The consolidated view is recomputed on every read and is never written back;
the raw ledger stays the audit trail.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Sequence

from .ledger import NOTIFICATION_FLAG
from .models import HistoryEntry
from .state import TicketStatus

DEFAULT_DISPLAY_LIMIT = 50

CONFIRMATION_PHRASE = "Confirmation sent by email and messaging"
RESULT_PHRASE = "Result sent by email and messaging"

_CONSOLIDATED_RE = re.compile(r"^\s*(confirmation|result) sent by email and messaging", re.IGNORECASE)
_VERBOSE_RES = (
    re.compile(r"^\s*(confirmation|result)\s+(email|message)\s+sent\s+to\b", re.IGNORECASE),
    re.compile(r"^\s*(e-?mail|whatsapp|message)\s+sent\s+to\b", re.IGNORECASE),
)


@dataclass(slots=True)
class ConsolidatedHistory:
    """Consolidated entries plus counters describing what was folded or cut."""

    entries: list[HistoryEntry] = field(default_factory=list)
    raw_count: int = 0
    consolidated_count: int = 0
    hidden_count: int = 0

    @property
    def suppressed_count(self) -> int:
        """Raw entries merged or dropped by consolidation."""

        return self.raw_count - self.consolidated_count


def is_consolidated_message(message: str) -> bool:
    return bool(_CONSOLIDATED_RE.match(message or ""))


def is_verbose_channel_message(message: str) -> bool:
    return any(pattern.match(message or "") for pattern in _VERBOSE_RES)


def _is_same_status_system(entry: HistoryEntry) -> bool:
    return entry.is_system and not entry.changes_status


def _single_channel(entry: HistoryEntry) -> str | None:
    if entry.email_sent and not entry.messaging_sent:
        return "email"
    if entry.messaging_sent and not entry.email_sent:
        return "messaging"
    return None


def _complementary(first: HistoryEntry, second: HistoryEntry) -> bool:
    if first.new_status != second.new_status:
        return False
    channels = {_single_channel(first), _single_channel(second)}
    return channels == {"email", "messaging"}


def _phrase_for(first: HistoryEntry, second: HistoryEntry) -> str:
    kinds = {first.metadata.get(NOTIFICATION_FLAG), second.metadata.get(NOTIFICATION_FLAG)}
    if "result" in kinds:
        return RESULT_PHRASE
    if "confirmation" in kinds:
        return CONFIRMATION_PHRASE
    combined = f"{first.message} {second.message}".lower()
    if "result" in combined or first.new_status == TicketStatus.CONCLUIDO:
        return RESULT_PHRASE
    return CONFIRMATION_PHRASE


def _merge(first: HistoryEntry, second: HistoryEntry) -> HistoryEntry:
    metadata = dict(first.metadata)
    metadata["consolidated_from"] = f"{first.id},{second.id}"
    return replace(
        first,
        timestamp=max(first.timestamp, second.timestamp),
        message=_phrase_for(first, second),
        email_sent=first.email_sent or second.email_sent,
        messaging_sent=first.messaging_sent or second.messaging_sent,
        metadata=metadata,
    )


def consolidate(entries: Sequence[HistoryEntry]) -> list[HistoryEntry]:
    """Collapse repetitive system notification entries, left to right."""

    result: list[HistoryEntry] = []
    index = 0
    total = len(entries)
    while index < total:
        entry = entries[index]
        if entry.changes_status or entry.attachment is not None:
            result.append(entry)
            index += 1
            continue
        if not entry.is_system:
            # Human same-status entries are kept whether or not they carry a message.
            result.append(entry)
            index += 1
            continue

        following = entries[index + 1] if index + 1 < total else None
        if following is not None and _is_same_status_system(following) and _complementary(entry, following):
            result.append(_merge(entry, following))
            index += 2
            continue

        if is_consolidated_message(entry.message) or not is_verbose_channel_message(entry.message):
            result.append(entry)
        index += 1
    return result


def consolidated_view(entries: Sequence[HistoryEntry], *, limit: int = DEFAULT_DISPLAY_LIMIT) -> ConsolidatedHistory:
    """Consolidate ``entries`` and keep only the most recent ``limit`` results."""

    if limit <= 0:
        raise ValueError("limit must be greater than zero")
    consolidated = consolidate(entries)
    hidden = max(0, len(consolidated) - limit)
    return ConsolidatedHistory(
        entries=consolidated[hidden:],
        raw_count=len(entries),
        consolidated_count=len(consolidated),
        hidden_count=hidden,
    )
