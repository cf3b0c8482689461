from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from certdesk.dependencies.auth import Caller, Role, role_required
from certdesk.notifications.attachments import AttachmentEncoder
from certdesk.tickets.store import TicketStore

require_operator = role_required(Role.OPERATOR)
require_admin = role_required(Role.ADMIN)

OperatorCaller = Annotated[Caller, Depends(require_operator)]
AdminCaller = Annotated[Caller, Depends(require_admin)]


async def get_ticket_store(request: Request) -> TicketStore:
    store = getattr(request.app.state, "ticket_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Ticket store is not configured")
    return store


async def get_attachment_encoder(request: Request) -> AttachmentEncoder:
    encoder = getattr(request.app.state, "attachment_encoder", None)
    return encoder if encoder is not None else AttachmentEncoder()
