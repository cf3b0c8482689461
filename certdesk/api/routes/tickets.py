from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from certdesk.dependencies.tickets import AdminCaller, OperatorCaller, get_attachment_encoder, get_ticket_store
from certdesk.errors import (
    AttachmentError,
    AuthenticationError,
    CertdeskError,
    InvalidTransitionError,
    TicketNotFoundError,
    TicketValidationError,
)
from certdesk.notifications.attachments import AttachmentEncoder, EncodedAttachment
from certdesk.notifications.dispatcher import DeliveryStatus
from certdesk.notifications.templates import NotificationKind
from certdesk.tickets.consolidation import ConsolidatedHistory
from certdesk.tickets.models import PersonType, Priority, TicketDraft
from certdesk.tickets.state import TicketStatus
from certdesk.tickets.store import TicketStore, TransitionResult

router = APIRouter(prefix="/tickets", tags=["tickets"])


class AttachmentPayload(BaseModel):
    """Base64 attachment; accepts both English and the intake console's field names."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, alias="nome")
    content_type: str | None = Field(default=None, alias="tipo")
    data: str = Field(..., min_length=1, alias="base64")


class TicketCreateRequest(BaseModel):
    id: str | None = Field(default=None, max_length=64)
    code: str | None = Field(default=None, max_length=32)
    full_name: str = Field(..., min_length=1, max_length=255)
    tax_id: str = Field(..., min_length=1, max_length=32)
    certificate_type: str = Field(..., min_length=1, max_length=64)
    person_type: PersonType = PersonType.INDIVIDUAL
    priority: Priority = Priority.STANDARD
    phone: str = ""
    email: str = ""
    birth_date: str = ""
    issuing_state: str = ""
    issuing_city: str = ""


class TicketTransitionRequest(BaseModel):
    status: TicketStatus
    author: str = Field(..., min_length=1, max_length=120)
    message: str = Field(default="", max_length=5000)
    expected_status: TicketStatus | None = None
    operator: str | None = Field(default=None, max_length=120)
    attachment: AttachmentPayload | None = None


class TicketOverrideRequest(BaseModel):
    status: TicketStatus
    author: str = Field(..., min_length=1, max_length=120)
    message: str = Field(default="", max_length=5000)


class CompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="", alias="mensagemInteracao", max_length=5000)
    attachment: AttachmentPayload | None = Field(default=None, alias="anexo")


class AttachmentRefResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    content_type: str
    locator: str


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime
    author: str
    previous_status: TicketStatus
    new_status: TicketStatus
    message: str
    email_sent: bool
    messaging_sent: bool
    attachment: AttachmentRefResponse | None
    metadata: dict[str, str]


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    full_name: str
    tax_id: str
    certificate_type: str
    person_type: PersonType
    priority: Priority
    created_at: datetime
    status: TicketStatus
    phone: str
    email: str
    birth_date: str
    issuing_state: str
    issuing_city: str
    assigned_operator: str | None
    assigned_at: datetime | None
    completed_at: datetime | None
    history: list[HistoryEntryResponse]


class ChannelOutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    channel: str
    status: DeliveryStatus
    detail: str
    variant: str | None
    message_id: str | None


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: NotificationKind
    email: ChannelOutcomeResponse
    messaging: ChannelOutcomeResponse


class TransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket: TicketResponse
    notification: NotificationResponse | None


class HistoryViewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entries: list[HistoryEntryResponse]
    raw_count: int
    consolidated_count: int
    hidden_count: int
    suppressed_count: int


class CodeResponse(BaseModel):
    code: str


TicketStoreDep = Annotated[TicketStore, Depends(get_ticket_store)]
EncoderDep = Annotated[AttachmentEncoder, Depends(get_attachment_encoder)]


def _http_error(exc: CertdeskError) -> HTTPException:
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (TicketValidationError, AttachmentError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=500, detail=f"[storage] {exc}")


def _decode(encoder: AttachmentEncoder, payload: AttachmentPayload | None) -> EncodedAttachment | None:
    if payload is None:
        return None
    return encoder.decode_payload(name=payload.name, content_type=payload.content_type, payload=payload.data)


def _to_transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse.model_validate(result)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, store: TicketStoreDep, _: OperatorCaller) -> TicketResponse:
    try:
        ticket = await store.create(TicketDraft(**payload.model_dump()))
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return TicketResponse.model_validate(ticket)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    store: TicketStoreDep,
    _: OperatorCaller,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    operator: str | None = Query(default=None),
) -> list[TicketResponse]:
    try:
        tickets = await store.list(status=status_filter, operator=operator)
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return [TicketResponse.model_validate(ticket) for ticket in tickets]


@router.get("/generate-code", response_model=CodeResponse)
async def generate_code(store: TicketStoreDep, _: OperatorCaller) -> CodeResponse:
    try:
        code = await store.generate_code()
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return CodeResponse(code=code)


@router.get("/{key}", response_model=TicketResponse)
async def get_ticket(key: str, store: TicketStoreDep, _: OperatorCaller) -> TicketResponse:
    try:
        ticket = await store.get(key)
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return TicketResponse.model_validate(ticket)


@router.put("/{ticket_id}", response_model=TransitionResponse)
async def apply_transition(
    ticket_id: str,
    payload: TicketTransitionRequest,
    store: TicketStoreDep,
    encoder: EncoderDep,
    _: OperatorCaller,
) -> TransitionResponse:
    try:
        result = await store.apply_transition(
            ticket_id,
            payload.status,
            author=payload.author,
            message=payload.message,
            attachment=_decode(encoder, payload.attachment),
            expected_status=payload.expected_status,
            operator=payload.operator,
        )
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return _to_transition_response(result)


@router.post("/{ticket_id}/confirm-payment", response_model=TransitionResponse)
async def confirm_payment(ticket_id: str, store: TicketStoreDep, _: OperatorCaller) -> TransitionResponse:
    try:
        result = await store.confirm_payment(ticket_id)
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return _to_transition_response(result)


@router.post("/{ticket_id}/send-completion", response_model=TransitionResponse)
async def send_completion(
    ticket_id: str,
    payload: CompletionRequest,
    store: TicketStoreDep,
    encoder: EncoderDep,
    _: OperatorCaller,
) -> TransitionResponse:
    try:
        result = await store.send_completion(
            ticket_id,
            message=payload.message,
            attachment=_decode(encoder, payload.attachment),
        )
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return _to_transition_response(result)


@router.put("/{ticket_id}/override", response_model=TicketResponse)
async def override_status(
    ticket_id: str,
    payload: TicketOverrideRequest,
    store: TicketStoreDep,
    _: AdminCaller,
) -> TicketResponse:
    try:
        ticket = await store.override_status(
            ticket_id,
            payload.status,
            author=payload.author,
            message=payload.message,
        )
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return TicketResponse.model_validate(ticket)


@router.get("/{key}/history", response_model=HistoryViewResponse)
async def get_history(
    key: str,
    store: TicketStoreDep,
    _: OperatorCaller,
    limit: int | None = Query(default=None, ge=1, le=500),
) -> HistoryViewResponse:
    try:
        view: ConsolidatedHistory = await store.history_view(key, limit=limit)
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return HistoryViewResponse.model_validate(view)


@router.get("/{ticket_id}/attachments/{entry_id}")
async def download_attachment(ticket_id: str, entry_id: str, store: TicketStoreDep, _: OperatorCaller) -> Response:
    try:
        stored = await store.get_attachment(ticket_id, entry_id)
    except CertdeskError as exc:
        raise _http_error(exc) from exc
    return Response(
        content=stored.content,
        media_type=stored.content_type,
        headers={"Content-Disposition": f'attachment; filename="{stored.name}"'},
    )
