from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Protocol, Sequence

import asyncpg

from certdesk.errors import CertdeskError, InvalidTransitionError, StorageUnavailableError, TicketValidationError

from .models import AttachmentRef, HistoryEntry, PersonType, Priority, Ticket, parse_datetime
from .state import TicketStatus

_PRIORITY_RANK = {Priority.PREMIUM: 0, Priority.PRIORITY: 1, Priority.STANDARD: 2}


@dataclass(frozen=True, slots=True)
class StoredAttachment:
    """Attachment bytes persisted next to the ledger entry that references them."""

    locator: str
    ticket_id: str
    name: str
    content_type: str
    content: bytes


class TicketRepository(Protocol):
    """Persistence contract the ticket store writes through."""

    async def ensure_schema(self) -> None:
        ...

    async def next_code_number(self) -> int:
        ...

    async def insert_ticket(self, ticket: Ticket) -> None:
        ...

    async def append_entry(self, ticket: Ticket, entry: HistoryEntry) -> None:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def find_by_code(self, code: str) -> Ticket | None:
        ...

    async def list_tickets(
        self, *, status: TicketStatus | None = None, operator: str | None = None
    ) -> list[Ticket]:
        ...

    async def count_tickets(self) -> int:
        ...

    async def save_attachment(self, attachment: StoredAttachment) -> None:
        ...

    async def get_attachment(self, locator: str) -> StoredAttachment | None:
        ...


def sort_tickets(tickets: Sequence[Ticket]) -> list[Ticket]:
    """Premium first, then priority, then standard; oldest first inside a tier."""

    return sorted(tickets, key=lambda ticket: (_PRIORITY_RANK[ticket.priority], ticket.created_at, ticket.code))


class InMemoryTicketRepository:
    """Process-local repository used for development and tests."""

    def __init__(self) -> None:
        self._tickets: dict[str, dict[str, Any]] = {}
        self._attachments: dict[str, StoredAttachment] = {}
        self._counter = 0
        self._counter_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        return None

    async def next_code_number(self) -> int:
        async with self._counter_lock:
            self._counter += 1
            return self._counter

    async def insert_ticket(self, ticket: Ticket) -> None:
        if any(stored["code"] == ticket.code for stored in self._tickets.values()):
            raise TicketValidationError(f"Ticket code {ticket.code} is already in use")
        self._tickets[ticket.id] = ticket.to_dict()

    async def append_entry(self, ticket: Ticket, entry: HistoryEntry) -> None:
        stored = self._tickets.get(ticket.id)
        if stored is None:
            raise StorageUnavailableError(f"Ticket {ticket.id} vanished from storage")
        if len(stored["history"]) + 1 != len(ticket.history):
            raise InvalidTransitionError(f"Ledger position conflict on ticket {ticket.id}")
        self._tickets[ticket.id] = ticket.to_dict()

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        stored = self._tickets.get(ticket_id)
        return Ticket.from_dict(stored) if stored is not None else None

    async def find_by_code(self, code: str) -> Ticket | None:
        for stored in self._tickets.values():
            if stored["code"] == code:
                return Ticket.from_dict(stored)
        return None

    async def list_tickets(
        self, *, status: TicketStatus | None = None, operator: str | None = None
    ) -> list[Ticket]:
        tickets = [Ticket.from_dict(stored) for stored in self._tickets.values()]
        if status is not None:
            tickets = [ticket for ticket in tickets if ticket.status == status]
        if operator is not None:
            tickets = [ticket for ticket in tickets if ticket.assigned_operator == operator]
        return sort_tickets(tickets)

    async def count_tickets(self) -> int:
        return len(self._tickets)

    async def save_attachment(self, attachment: StoredAttachment) -> None:
        self._attachments[attachment.locator] = attachment

    async def get_attachment(self, locator: str) -> StoredAttachment | None:
        return self._attachments.get(locator)


@contextmanager
def _storage_errors(operation: str, *, conflict: type[CertdeskError] = TicketValidationError) -> Iterator[None]:
    try:
        yield
    except asyncpg.UniqueViolationError as exc:
        raise conflict(f"{operation} conflicts with an existing record: {exc}") from exc
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        raise StorageUnavailableError(f"Storage failure during {operation}: {exc}") from exc


class PostgresTicketRepository:
    """asyncpg backed persistence for tickets, their ledgers and attachments."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        tax_id TEXT NOT NULL,
        certificate_type TEXT NOT NULL,
        person_type TEXT NOT NULL,
        priority TEXT NOT NULL,
        phone TEXT NOT NULL DEFAULT '',
        email TEXT NOT NULL DEFAULT '',
        birth_date TEXT NOT NULL DEFAULT '',
        issuing_state TEXT NOT NULL DEFAULT '',
        issuing_city TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        assigned_operator TEXT NULL,
        assigned_at TIMESTAMPTZ NULL,
        completed_at TIMESTAMPTZ NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_history (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        author TEXT NOT NULL,
        previous_status TEXT NOT NULL,
        new_status TEXT NOT NULL,
        message TEXT NOT NULL DEFAULT '',
        email_sent BOOLEAN NOT NULL DEFAULT FALSE,
        messaging_sent BOOLEAN NOT NULL DEFAULT FALSE,
        attachment JSONB NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (ticket_id, position)
    )
    """

    _CREATE_ATTACHMENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_attachments (
        locator TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        content_type TEXT NOT NULL,
        content BYTEA NOT NULL
    )
    """

    _CREATE_CODE_SEQUENCE_SQL = "CREATE SEQUENCE IF NOT EXISTS ticket_code_seq"

    _NEXT_CODE_SQL = "SELECT nextval('ticket_code_seq') AS value"

    _TICKET_COLUMNS = (
        "id, code, full_name, tax_id, certificate_type, person_type, priority, phone, email, birth_date, "
        "issuing_state, issuing_city, status, assigned_operator, assigned_at, completed_at, created_at"
    )

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
    """

    _UPDATE_WORKFLOW_SQL = """
    UPDATE tickets
    SET status = $2,
        assigned_operator = $3,
        assigned_at = $4,
        completed_at = $5
    WHERE id = $1
    """

    _INSERT_HISTORY_SQL = """
    INSERT INTO ticket_history (
        id, ticket_id, position, author, previous_status, new_status, message,
        email_sent, messaging_sent, attachment, metadata, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11::jsonb, $12)
    """

    _SELECT_TICKET_SQL = f"SELECT {_TICKET_COLUMNS} FROM tickets WHERE id = $1"

    _SELECT_TICKET_BY_CODE_SQL = f"SELECT {_TICKET_COLUMNS} FROM tickets WHERE code = $1"

    _LIST_TICKETS_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE ($1::text IS NULL OR status = $1)
      AND ($2::text IS NULL OR assigned_operator = $2)
    ORDER BY CASE priority WHEN 'premium' THEN 0 WHEN 'prioridade' THEN 1 ELSE 2 END, created_at ASC
    """

    _COUNT_TICKETS_SQL = "SELECT COUNT(*) AS total FROM tickets"

    _SELECT_HISTORY_SQL = """
    SELECT id, ticket_id, position, author, previous_status, new_status, message,
           email_sent, messaging_sent, attachment, metadata, created_at
    FROM ticket_history
    WHERE ticket_id = ANY($1::text[])
    ORDER BY ticket_id, position ASC
    """

    _INSERT_ATTACHMENT_SQL = """
    INSERT INTO ticket_attachments (locator, ticket_id, name, content_type, content)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (locator) DO NOTHING
    """

    _SELECT_ATTACHMENT_SQL = """
    SELECT locator, ticket_id, name, content_type, content
    FROM ticket_attachments
    WHERE locator = $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        with _storage_errors("schema setup"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._CREATE_TICKETS_SQL)
                await connection.execute(self._CREATE_HISTORY_SQL)
                await connection.execute(self._CREATE_ATTACHMENTS_SQL)
                await connection.execute(self._CREATE_CODE_SEQUENCE_SQL)

    async def next_code_number(self) -> int:
        with _storage_errors("code allocation"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._NEXT_CODE_SQL)
        if row is None:
            raise StorageUnavailableError("Code sequence returned no value")
        return int(row["value"])

    async def insert_ticket(self, ticket: Ticket) -> None:
        with _storage_errors("ticket insert"):
            async with self._pool.acquire() as connection:
                await connection.execute(
                    self._INSERT_TICKET_SQL,
                    ticket.id,
                    ticket.code,
                    ticket.full_name,
                    ticket.tax_id,
                    ticket.certificate_type,
                    ticket.person_type.value,
                    ticket.priority.value,
                    ticket.phone,
                    ticket.email,
                    ticket.birth_date,
                    ticket.issuing_state,
                    ticket.issuing_city,
                    ticket.status.value,
                    ticket.assigned_operator,
                    ticket.assigned_at,
                    ticket.completed_at,
                    ticket.created_at,
                )

    async def append_entry(self, ticket: Ticket, entry: HistoryEntry) -> None:
        # A concurrent writer that already took this ledger position wins.
        with _storage_errors("history append", conflict=InvalidTransitionError):
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    await connection.execute(
                        self._INSERT_HISTORY_SQL,
                        entry.id,
                        ticket.id,
                        len(ticket.history) - 1,
                        entry.author,
                        entry.previous_status.value,
                        entry.new_status.value,
                        entry.message,
                        entry.email_sent,
                        entry.messaging_sent,
                        json.dumps(entry.attachment.to_dict()) if entry.attachment else None,
                        json.dumps(dict(entry.metadata)),
                        entry.timestamp,
                    )
                    await connection.execute(
                        self._UPDATE_WORKFLOW_SQL,
                        ticket.id,
                        ticket.status.value,
                        ticket.assigned_operator,
                        ticket.assigned_at,
                        ticket.completed_at,
                    )

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        return await self._fetch_one(self._SELECT_TICKET_SQL, ticket_id)

    async def find_by_code(self, code: str) -> Ticket | None:
        return await self._fetch_one(self._SELECT_TICKET_BY_CODE_SQL, code)

    async def list_tickets(
        self, *, status: TicketStatus | None = None, operator: str | None = None
    ) -> list[Ticket]:
        with _storage_errors("ticket listing"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(
                    self._LIST_TICKETS_SQL,
                    None if status is None else status.value,
                    operator,
                )
                history_rows = await connection.fetch(self._SELECT_HISTORY_SQL, [row["id"] for row in rows])
        return self._assemble(rows, history_rows)

    async def count_tickets(self) -> int:
        with _storage_errors("ticket count"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._COUNT_TICKETS_SQL)
        return int(row["total"]) if row is not None else 0

    async def save_attachment(self, attachment: StoredAttachment) -> None:
        with _storage_errors("attachment save"):
            async with self._pool.acquire() as connection:
                await connection.execute(
                    self._INSERT_ATTACHMENT_SQL,
                    attachment.locator,
                    attachment.ticket_id,
                    attachment.name,
                    attachment.content_type,
                    attachment.content,
                )

    async def get_attachment(self, locator: str) -> StoredAttachment | None:
        with _storage_errors("attachment read"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._SELECT_ATTACHMENT_SQL, locator)
        if row is None:
            return None
        return StoredAttachment(
            locator=str(row["locator"]),
            ticket_id=str(row["ticket_id"]),
            name=str(row["name"]),
            content_type=str(row["content_type"]),
            content=bytes(row["content"]),
        )

    async def _fetch_one(self, query: str, key: str) -> Ticket | None:
        with _storage_errors("ticket read"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(query, key)
                if row is None:
                    return None
                history_rows = await connection.fetch(self._SELECT_HISTORY_SQL, [row["id"]])
        tickets = self._assemble([row], history_rows)
        return tickets[0]

    @classmethod
    def _assemble(cls, rows: Sequence[Mapping[str, Any]], history_rows: Sequence[Mapping[str, Any]]) -> list[Ticket]:
        grouped: dict[str, list[HistoryEntry]] = {}
        for history_row in history_rows:
            grouped.setdefault(str(history_row["ticket_id"]), []).append(cls._row_to_entry(history_row))
        return [cls._row_to_ticket(row, grouped.get(str(row["id"]), [])) for row in rows]

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any], history: list[HistoryEntry]) -> Ticket:
        return Ticket(
            id=str(row["id"]),
            code=str(row["code"]),
            full_name=str(row["full_name"]),
            tax_id=str(row["tax_id"]),
            certificate_type=str(row["certificate_type"]),
            person_type=PersonType(str(row["person_type"])),
            priority=Priority(str(row["priority"])),
            created_at=_ensure_datetime(row["created_at"]),
            status=TicketStatus(str(row["status"])),
            phone=str(row["phone"] or ""),
            email=str(row["email"] or ""),
            birth_date=str(row["birth_date"] or ""),
            issuing_state=str(row["issuing_state"] or ""),
            issuing_city=str(row["issuing_city"] or ""),
            assigned_operator=row["assigned_operator"],
            assigned_at=parse_datetime(row["assigned_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            history=history,
        )

    @staticmethod
    def _row_to_entry(row: Mapping[str, Any]) -> HistoryEntry:
        attachment = _load_json(row["attachment"])
        metadata = _load_json(row["metadata"]) or {}
        return HistoryEntry(
            id=str(row["id"]),
            timestamp=_ensure_datetime(row["created_at"]),
            author=str(row["author"]),
            previous_status=TicketStatus(str(row["previous_status"])),
            new_status=TicketStatus(str(row["new_status"])),
            message=str(row["message"] or ""),
            email_sent=bool(row["email_sent"]),
            messaging_sent=bool(row["messaging_sent"]),
            attachment=AttachmentRef.from_dict(attachment) if attachment else None,
            metadata={str(key): str(value) for key, value in metadata.items()},
        )


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _ensure_datetime(value: Any) -> datetime:
    parsed = parse_datetime(value)
    return parsed if parsed is not None else datetime.now(timezone.utc)
