"""Intake Bridge: hands public intake submissions to the ticket store.

Submissions survive store outages: a draft that cannot be created is kept in
a local cache and re-sent by :meth:`IntakeBridge.flush_pending`, which first
checks whether an earlier attempt already reached the store.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping
from uuid import uuid4

from certdesk.api_client import TicketStoreClient
from certdesk.errors import CacheError, StorageUnavailableError
from certdesk.sync.cache import SqliteFallbackCache
from certdesk.tickets.models import PersonType, Priority, Ticket, TicketDraft

logger = logging.getLogger(__name__)

PENDING_KEY = "intake:pending"

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "full_name": ("nomeCompleto", "nome", "nomeCompletoSolicitante", "full_name"),
    "tax_id": ("cpf", "cnpj", "cpfOuCnpj", "documento", "tax_id"),
    "birth_date": ("dataNascimento", "dataNascimentoSolicitante", "birth_date"),
    "issuing_state": ("estadoEmissao", "estado", "estadoSolicitante", "issuing_state"),
    "issuing_city": ("cidadeEmissao", "cidade", "cidadeSolicitante", "issuing_city"),
    "phone": ("telefone", "telefoneSolicitante", "phone"),
    "email": ("email", "emailSolicitante"),
}


def _first(form: Mapping[str, Any], names: tuple[str, ...]) -> str:
    for name in names:
        value = form.get(name)
        if value:
            return str(value).strip()
    return ""


def _normalize_birth_date(value: str) -> str:
    parts = value.split("/")
    if len(parts) == 3:
        day, month, year = parts
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return value


def draft_from_form(
    form: Mapping[str, Any],
    *,
    certificate_type: str,
    plan: str = Priority.STANDARD.value,
    state: str | None = None,
) -> TicketDraft:
    """Map raw intake form fields (several historical field names) onto a draft."""

    fields = {name: _first(form, aliases) for name, aliases in _FIELD_ALIASES.items()}
    digits = re.sub(r"\D", "", fields["tax_id"])
    try:
        priority = Priority(plan)
    except ValueError:
        priority = Priority.STANDARD
    return TicketDraft(
        full_name=fields["full_name"],
        tax_id=fields["tax_id"],
        certificate_type=certificate_type,
        person_type=PersonType.ORGANIZATION if len(digits) > 11 else PersonType.INDIVIDUAL,
        priority=priority,
        phone=fields["phone"],
        email=fields["email"],
        birth_date=_normalize_birth_date(fields["birth_date"]),
        issuing_state=state or fields["issuing_state"],
        issuing_city=fields["issuing_city"],
    )


@dataclass(frozen=True, slots=True)
class SubmissionReceipt:
    """What the intake surface shows the customer after submitting."""

    ticket_id: str
    code: str | None
    queued: bool
    ticket: Ticket | None = None


class IntakeBridge:
    """Create tickets from intake drafts, queueing them while the store is down."""

    def __init__(self, api: TicketStoreClient, pending: SqliteFallbackCache) -> None:
        self.api = api
        self.pending = pending

    async def submit(self, draft: TicketDraft) -> SubmissionReceipt:
        draft.validate()
        if draft.id is None:
            draft.id = str(uuid4())
        if draft.code is None:
            try:
                draft.code = await self.api.generate_code()
            except StorageUnavailableError as exc:
                logger.warning("Intake could not pre-allocate a code for %s: %s", draft.id, exc)

        try:
            ticket = await self.api.create_ticket(draft)
        except StorageUnavailableError as exc:
            logger.warning("Intake queued draft %s while the store is unavailable: %s", draft.id, exc)
            self._enqueue(draft)
            return SubmissionReceipt(ticket_id=draft.id, code=draft.code, queued=True)

        logger.info("Intake created ticket %s (%s)", ticket.code, ticket.id)
        return SubmissionReceipt(ticket_id=ticket.id, code=ticket.code, queued=False, ticket=ticket)

    def pending_drafts(self) -> list[TicketDraft]:
        try:
            stored = self.pending.get(PENDING_KEY) or []
        except CacheError as exc:
            logger.error("Intake pending queue is unreadable: %s", exc)
            return []
        return [TicketDraft.from_dict(item) for item in stored]

    async def flush_pending(self) -> list[Ticket]:
        """Re-send queued drafts; drafts that already reached the store are reconciled, not duplicated."""

        created: list[Ticket] = []
        remaining: list[TicketDraft] = []
        for draft in self.pending_drafts():
            try:
                ticket = await self._reconcile(draft)
            except StorageUnavailableError as exc:
                logger.warning("Intake draft %s still pending: %s", draft.id, exc)
                remaining.append(draft)
                continue
            created.append(ticket)
        self._save(remaining)
        return created

    async def _reconcile(self, draft: TicketDraft) -> Ticket:
        if draft.id:
            existing = await self.api.find_ticket(draft.id)
            if existing is not None:
                return existing
        if draft.code:
            existing = await self.api.find_ticket(draft.code)
            if existing is not None and existing.tax_id == draft.tax_id:
                return existing
        return await self.api.create_ticket(draft)

    def _enqueue(self, draft: TicketDraft) -> None:
        drafts = [item for item in self.pending_drafts() if item.id != draft.id]
        drafts.append(draft)
        self._save(drafts)

    def _save(self, drafts: list[TicketDraft]) -> None:
        try:
            self.pending.put(PENDING_KEY, [draft.to_dict() for draft in drafts])
        except CacheError as exc:
            logger.error("Intake pending queue could not be saved (%d drafts): %s", len(drafts), exc)
