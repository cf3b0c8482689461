from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, TypeVar
from uuid import uuid4

from certdesk.errors import InvalidTransitionError, StorageUnavailableError, TicketNotFoundError
from certdesk.notifications.attachments import AttachmentEncoder, EncodedAttachment
from certdesk.notifications.dispatcher import DispatchResult, NotificationDispatcher
from certdesk.notifications.templates import NotificationKind

from .consolidation import DEFAULT_DISPLAY_LIMIT, ConsolidatedHistory, consolidated_view
from .ledger import NOTIFICATION_FLAG, OVERRIDE_FLAG, apply_entry, new_entry
from .models import SYSTEM_AUTHOR, AttachmentRef, Ticket, TicketDraft
from .repository import StoredAttachment, TicketRepository
from .state import TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

CODE_PREFIX = "TK-"
PAYMENT_CONFIRMED_MESSAGE = "Payment confirmed. Ticket in processing."


def format_code(number: int) -> str:
    return f"{CODE_PREFIX}{number:03d}"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Ticket after a write, plus the notification outcome when one was sent."""

    ticket: Ticket
    notification: DispatchResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket.to_dict(),
            "notification": self.notification.to_dict() if self.notification else None,
        }


class TicketStore:
    """Sole authority for ticket state.

    Writes to one ticket are serialized through a per-ticket ``asyncio.Lock``;
    every repository call is bounded by ``storage_timeout`` and surfaces as
    :class:`StorageUnavailableError` when it does not finish in time.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        dispatcher: NotificationDispatcher | None = None,
        encoder: AttachmentEncoder | None = None,
        storage_timeout: float = 10.0,
        history_limit: int = DEFAULT_DISPLAY_LIMIT,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher or NotificationDispatcher(email_provider=None, messaging=None)
        self.encoder = encoder or AttachmentEncoder()
        self.storage_timeout = storage_timeout
        self.history_limit = history_limit
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def ensure_schema(self) -> None:
        await self._storage(self.repository.ensure_schema(), "schema setup")

    async def generate_code(self) -> str:
        """Pre-allocate the next sequential code for offline-first intake."""

        number = await self._storage(self.repository.next_code_number(), "code allocation")
        return format_code(number)

    async def create(self, draft: TicketDraft) -> Ticket:
        draft.validate()
        ticket_id = draft.id or str(uuid4())
        async with self._lock_for(ticket_id):
            existing = await self._storage(self.repository.get_ticket(ticket_id), "ticket read")
            if existing is not None:
                logger.info("Ticket %s already exists; returning stored copy", ticket_id)
                return existing

            code = None
            if draft.code:
                taken = await self._storage(self.repository.find_by_code(draft.code), "ticket read")
                if taken is None:
                    code = draft.code
                else:
                    logger.warning("Pre-allocated code %s already used by %s; allocating a new one", draft.code, taken.id)
            if code is None:
                code = await self.generate_code()

            ticket = Ticket(
                id=ticket_id,
                code=code,
                full_name=draft.full_name.strip(),
                tax_id=draft.tax_id.strip(),
                certificate_type=draft.certificate_type.strip(),
                person_type=draft.person_type,
                priority=draft.priority,
                created_at=datetime.now(timezone.utc),
                status=TicketStateMachine.initial_state(),
                phone=draft.phone.strip(),
                email=draft.email.strip(),
                birth_date=draft.birth_date,
                issuing_state=draft.issuing_state,
                issuing_city=draft.issuing_city,
            )
            await self._storage(self.repository.insert_ticket(ticket), "ticket insert")
        logger.info("Created ticket %s (%s, %s)", ticket.code, ticket.id, ticket.priority.value)
        return ticket

    async def get(self, key: str) -> Ticket:
        """Resolve ``key`` as a ticket id first, then as a ticket code."""

        ticket = await self._storage(self.repository.get_ticket(key), "ticket read")
        if ticket is None:
            ticket = await self._storage(self.repository.find_by_code(key), "ticket read")
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {key} not found")
        return ticket

    async def list(self, *, status: TicketStatus | None = None, operator: str | None = None) -> list[Ticket]:
        return await self._storage(
            self.repository.list_tickets(status=status, operator=operator), "ticket listing"
        )

    async def count(self) -> int:
        return await self._storage(self.repository.count_tickets(), "ticket count")

    async def apply_transition(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        *,
        author: str,
        message: str = "",
        attachment: EncodedAttachment | None = None,
        expected_status: TicketStatus | None = None,
        operator: str | None = None,
    ) -> TransitionResult:
        """Validate and append one transition.

        Entering ``CONCLUIDO`` sends the result notification before the entry is
        persisted, so the stored entry carries the delivered flags. A failure
        before the append leaves the ticket untouched and the call retryable.
        """

        async with self._lock_for(ticket_id):
            ticket = await self._require(ticket_id)
            if expected_status is not None and ticket.status != expected_status:
                raise InvalidTransitionError(
                    f"Ticket {ticket.code} is {ticket.status.value}, not {expected_status.value}; reload and retry"
                )
            if not TicketStateMachine.can_transition(ticket.status, new_status):
                raise InvalidTransitionError(
                    f"Ticket {ticket.code} cannot move from {ticket.status.value} to {new_status.value}"
                )

            now = datetime.now(timezone.utc)
            if new_status == TicketStatus.EM_ATENDIMENTO and ticket.status != TicketStatus.EM_ATENDIMENTO:
                ticket = replace(ticket, assigned_operator=operator or author, assigned_at=now)

            attachment_ref = None
            if attachment is not None:
                attachment_ref = await self._store_attachment(ticket, attachment)

            notification = None
            metadata: dict[str, str] = {}
            if new_status == TicketStatus.CONCLUIDO:
                notification = await self.dispatcher.dispatch(
                    ticket,
                    kind=NotificationKind.RESULT,
                    message=message,
                    attachment=attachment,
                    attachment_timeout=self.encoder.compute_timeout(attachment.size) if attachment else 0.0,
                )
                metadata = {
                    "email_delivery": notification.email.status.value,
                    "messaging_delivery": notification.messaging.status.value,
                }

            entry = new_entry(
                ticket,
                author=author,
                new_status=new_status,
                message=message,
                email_sent=notification.email_sent if notification else False,
                messaging_sent=notification.messaging_sent if notification else False,
                attachment=attachment_ref,
                metadata=metadata,
                now=now,
            )
            updated = apply_entry(ticket, entry)
            await self._storage(self.repository.append_entry(updated, entry), "history append")

        logger.info(
            "Ticket %s %s -> %s by %s",
            updated.code,
            entry.previous_status.value,
            entry.new_status.value,
            author,
        )
        return TransitionResult(ticket=updated, notification=notification)

    async def confirm_payment(self, ticket_id: str) -> TransitionResult:
        """Move a new ticket into processing and send the payment confirmation."""

        async with self._lock_for(ticket_id):
            ticket = await self._require(ticket_id)
            if ticket.status != TicketStatus.GERAL:
                raise InvalidTransitionError(
                    f"Ticket {ticket.code} is {ticket.status.value}; payment can only be confirmed on new tickets"
                )
            entry = new_entry(
                ticket,
                author=SYSTEM_AUTHOR,
                new_status=TicketStatus.EM_OPERACAO,
                message=PAYMENT_CONFIRMED_MESSAGE,
            )
            ticket = apply_entry(ticket, entry)
            await self._storage(self.repository.append_entry(ticket, entry), "history append")
            logger.info("Payment confirmed for ticket %s", ticket.code)

            notification = await self.dispatcher.dispatch(ticket, kind=NotificationKind.CONFIRMATION)
            ticket = await self._record_deliveries(ticket, notification, label="Confirmation")
        return TransitionResult(ticket=ticket, notification=notification)

    async def send_completion(
        self,
        ticket_id: str,
        *,
        message: str = "",
        attachment: EncodedAttachment | None = None,
    ) -> TransitionResult:
        """Re-send the result notification of a concluded ticket."""

        async with self._lock_for(ticket_id):
            ticket = await self._require(ticket_id)
            if ticket.status != TicketStatus.CONCLUIDO:
                raise InvalidTransitionError(
                    f"Ticket {ticket.code} is {ticket.status.value}; only concluded tickets can resend results"
                )
            notification = await self.dispatcher.dispatch(
                ticket,
                kind=NotificationKind.RESULT,
                message=message,
                attachment=attachment,
                attachment_timeout=self.encoder.compute_timeout(attachment.size) if attachment else 0.0,
            )
            ticket = await self._record_deliveries(ticket, notification, label="Result")
        return TransitionResult(ticket=ticket, notification=notification)

    async def override_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        *,
        author: str,
        message: str = "",
    ) -> Ticket:
        """Administrative status edit: any edge, recorded in the ledger, never notifies."""

        async with self._lock_for(ticket_id):
            ticket = await self._require(ticket_id)
            entry = new_entry(
                ticket,
                author=author,
                new_status=new_status,
                message=message or f"Status set to {new_status.value} by administrator",
                metadata={OVERRIDE_FLAG: "true"},
            )
            updated = apply_entry(ticket, entry)
            await self._storage(self.repository.append_entry(updated, entry), "history append")
        logger.warning(
            "Administrative override on ticket %s: %s -> %s by %s",
            updated.code,
            entry.previous_status.value,
            new_status.value,
            author,
        )
        return updated

    async def history_view(self, key: str, *, limit: int | None = None) -> ConsolidatedHistory:
        ticket = await self.get(key)
        return consolidated_view(ticket.history, limit=limit or self.history_limit)

    async def get_attachment(self, ticket_id: str, entry_id: str) -> StoredAttachment:
        ticket = await self.get(ticket_id)
        entry = next((item for item in ticket.history if item.id == entry_id), None)
        if entry is None or entry.attachment is None:
            raise TicketNotFoundError(f"No attachment on entry {entry_id} of ticket {ticket.code}")
        stored = await self._storage(self.repository.get_attachment(entry.attachment.locator), "attachment read")
        if stored is None:
            raise TicketNotFoundError(f"Attachment {entry.attachment.locator} is missing from storage")
        return stored

    async def _record_deliveries(self, ticket: Ticket, notification: DispatchResult, *, label: str) -> Ticket:
        records = []
        if notification.email_sent:
            records.append((f"{label} email sent to {ticket.email}", True, False))
        if notification.messaging_sent:
            records.append((f"{label} message sent to {ticket.phone}", False, True))
        for message, email_sent, messaging_sent in records:
            entry = new_entry(
                ticket,
                author=SYSTEM_AUTHOR,
                new_status=ticket.status,
                message=message,
                email_sent=email_sent,
                messaging_sent=messaging_sent,
                metadata={NOTIFICATION_FLAG: notification.kind.value},
            )
            ticket = apply_entry(ticket, entry)
            await self._storage(self.repository.append_entry(ticket, entry), "history append")
        return ticket

    async def _store_attachment(self, ticket: Ticket, attachment: EncodedAttachment) -> AttachmentRef:
        locator = f"att-{uuid4().hex}"
        await self._storage(
            self.repository.save_attachment(
                StoredAttachment(
                    locator=locator,
                    ticket_id=ticket.id,
                    name=attachment.name,
                    content_type=attachment.content_type,
                    content=attachment.content,
                )
            ),
            "attachment save",
        )
        return AttachmentRef(name=attachment.name, content_type=attachment.content_type, locator=locator)

    async def _require(self, ticket_id: str) -> Ticket:
        ticket = await self._storage(self.repository.get_ticket(ticket_id), "ticket read")
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    def _lock_for(self, ticket_id: str) -> asyncio.Lock:
        lock = self._locks.get(ticket_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ticket_id] = lock
        return lock

    async def _storage(self, operation: Awaitable[T], name: str) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.storage_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Storage %s timed out after %.1fs", name, self.storage_timeout)
            raise StorageUnavailableError(f"Storage {name} timed out after {self.storage_timeout:.1f}s") from exc
        except StorageUnavailableError:
            logger.error("Storage %s failed", name, exc_info=True)
            raise
