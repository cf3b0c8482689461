from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from certdesk.errors import TicketValidationError

from .state import TicketStatus

SYSTEM_AUTHOR = "system"


class PersonType(str, Enum):
    """Whether the requester is an individual (CPF) or an organization (CNPJ)."""

    INDIVIDUAL = "CPF"
    ORGANIZATION = "CNPJ"


class Priority(str, Enum):
    """Service tier. Drives ordering and billing, never processing logic."""

    STANDARD = "padrao"
    PRIORITY = "prioridade"
    PREMIUM = "premium"


@dataclass(frozen=True, slots=True)
class AttachmentRef:
    """Pointer to a stored attachment recorded on a history entry."""

    name: str
    content_type: str
    locator: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "content_type": self.content_type, "locator": self.locator}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttachmentRef":
        return cls(
            name=str(data.get("name", "")),
            content_type=str(data.get("content_type", "")),
            locator=str(data.get("locator", "")),
        )


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """Immutable record of one status transition appended to a ticket's ledger."""

    id: str
    timestamp: datetime
    author: str
    previous_status: TicketStatus
    new_status: TicketStatus
    message: str = ""
    email_sent: bool = False
    messaging_sent: bool = False
    attachment: AttachmentRef | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_system(self) -> bool:
        return self.author.strip().lower() == SYSTEM_AUTHOR

    @property
    def changes_status(self) -> bool:
        return self.previous_status != self.new_status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "author": self.author,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "message": self.message,
            "email_sent": self.email_sent,
            "messaging_sent": self.messaging_sent,
            "attachment": self.attachment.to_dict() if self.attachment else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryEntry":
        attachment = data.get("attachment")
        return cls(
            id=str(data["id"]),
            timestamp=parse_datetime(data.get("timestamp")) or datetime.now(timezone.utc),
            author=str(data.get("author") or SYSTEM_AUTHOR),
            previous_status=TicketStatus(str(data["previous_status"])),
            new_status=TicketStatus(str(data["new_status"])),
            message=str(data.get("message") or ""),
            email_sent=bool(data.get("email_sent", False)),
            messaging_sent=bool(data.get("messaging_sent", False)),
            attachment=AttachmentRef.from_dict(attachment) if attachment else None,
            metadata={str(key): str(value) for key, value in (data.get("metadata") or {}).items()},
        )


@dataclass(slots=True)
class TicketDraft:
    """Ticket contents as submitted by the intake surface, before an id and code exist."""

    full_name: str
    tax_id: str
    certificate_type: str
    person_type: PersonType = PersonType.INDIVIDUAL
    priority: Priority = Priority.STANDARD
    phone: str = ""
    email: str = ""
    birth_date: str = ""
    issuing_state: str = ""
    issuing_city: str = ""
    id: str | None = None
    code: str | None = None

    def validate(self) -> None:
        missing = [
            name
            for name in ("full_name", "tax_id", "certificate_type")
            if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise TicketValidationError(f"Missing required fields: {', '.join(missing)}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "full_name": self.full_name,
            "tax_id": self.tax_id,
            "certificate_type": self.certificate_type,
            "person_type": self.person_type.value,
            "priority": self.priority.value,
            "phone": self.phone,
            "email": self.email,
            "birth_date": self.birth_date,
            "issuing_state": self.issuing_state,
            "issuing_city": self.issuing_city,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TicketDraft":
        return cls(
            id=data.get("id") or None,
            code=data.get("code") or None,
            full_name=str(data.get("full_name") or ""),
            tax_id=str(data.get("tax_id") or ""),
            certificate_type=str(data.get("certificate_type") or ""),
            person_type=PersonType(str(data.get("person_type") or PersonType.INDIVIDUAL.value)),
            priority=Priority(str(data.get("priority") or Priority.STANDARD.value)),
            phone=str(data.get("phone") or ""),
            email=str(data.get("email") or ""),
            birth_date=str(data.get("birth_date") or ""),
            issuing_state=str(data.get("issuing_state") or ""),
            issuing_city=str(data.get("issuing_city") or ""),
        )


@dataclass(slots=True)
class Ticket:
    """Aggregate representing one certificate request and its ledger."""

    id: str
    code: str
    full_name: str
    tax_id: str
    certificate_type: str
    person_type: PersonType
    priority: Priority
    created_at: datetime
    status: TicketStatus = TicketStatus.GERAL
    phone: str = ""
    email: str = ""
    birth_date: str = ""
    issuing_state: str = ""
    issuing_city: str = ""
    assigned_operator: str | None = None
    assigned_at: datetime | None = None
    completed_at: datetime | None = None
    history: list[HistoryEntry] = field(default_factory=list)

    @property
    def first_name(self) -> str:
        parts = self.full_name.split()
        return parts[0] if parts else self.full_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "full_name": self.full_name,
            "tax_id": self.tax_id,
            "certificate_type": self.certificate_type,
            "person_type": self.person_type.value,
            "priority": self.priority.value,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "phone": self.phone,
            "email": self.email,
            "birth_date": self.birth_date,
            "issuing_state": self.issuing_state,
            "issuing_city": self.issuing_city,
            "assigned_operator": self.assigned_operator,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Ticket":
        return cls(
            id=str(data["id"]),
            code=str(data["code"]),
            full_name=str(data.get("full_name") or ""),
            tax_id=str(data.get("tax_id") or ""),
            certificate_type=str(data.get("certificate_type") or ""),
            person_type=PersonType(str(data.get("person_type") or PersonType.INDIVIDUAL.value)),
            priority=Priority(str(data.get("priority") or Priority.STANDARD.value)),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
            status=TicketStatus(str(data.get("status") or TicketStatus.GERAL.value)),
            phone=str(data.get("phone") or ""),
            email=str(data.get("email") or ""),
            birth_date=str(data.get("birth_date") or ""),
            issuing_state=str(data.get("issuing_state") or ""),
            issuing_city=str(data.get("issuing_city") or ""),
            assigned_operator=data.get("assigned_operator") or None,
            assigned_at=parse_datetime(data.get("assigned_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            history=[HistoryEntry.from_dict(item) for item in data.get("history") or []],
        )


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed
